"""
TeamProvider — the session's teams, current team and its members.

Load order (initial and on every ``team_members`` change):
    1. memberships of the signed-in user
    2. the teams those memberships point at
    3. keep the current team if still visible, else select the first
    4. members of the current team, with their display profiles

Team creation and joining are remote-first (the join code and the new ids
come from the server); edits, deletes and member changes go through the
optimistic coordinators.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from taskify.engine.context import UserContext, get_user_context
from taskify.engine.errors import (
    PreconditionFailedError,
    RemoteRejectedError,
    TaskifyError,
)
from taskify.engine.logging import AsyncLogQueue
from taskify.sync.coordinator import MutationCoordinator, MutationResult
from taskify.sync.feed import ChangeEvent, ChangeKind, ChangeTransport
from taskify.sync.models import Team, TeamDraft, TeamMember, TeamMemberPatch, TeamPatch, TeamRole
from taskify.sync.notices import NoticeSink, info
from taskify.sync.provider import BaseProvider
from taskify.sync.remote import (
    TEAM_MEMBERS,
    RemoteSyncAdapter,
    RestClient,
    fetch_profiles,
    generate_join_code,
    team_adapter,
    team_member_adapter,
)
from taskify.sync.store import EntityStore

logger = logging.getLogger("taskify.sync.teams")


class ProfiledMemberAdapter(RemoteSyncAdapter[TeamMember]):
    """Team member adapter whose fetches carry the members' display profiles."""

    def __init__(self, client: RestClient):
        super().__init__(client, TEAM_MEMBERS)

    async def fetch_all(self, scope_filters: Optional[Mapping[str, Any]] = None) -> List[TeamMember]:
        members = await super().fetch_all(scope_filters)
        profiles = await fetch_profiles(self._client, [m.user_id for m in members])
        # A member without a profile row keeps user=None.
        return [m.model_copy(update={"user": profiles.get(m.user_id)}) for m in members]


class TeamProvider(BaseProvider):
    """Teams of the signed-in user plus the member list of the current team."""

    feed_table = "team_members"

    def __init__(
        self,
        client: RestClient,
        transport: ChangeTransport,
        *,
        notices: Optional[NoticeSink] = None,
        identity: Callable[[], Optional[UserContext]] = get_user_context,
        log_queue: Optional[AsyncLogQueue] = None,
    ):
        super().__init__(transport, notices=notices, identity=identity, log_queue=log_queue)
        self._client = client
        self._team_adapter = team_adapter(client)
        self._memberships = team_member_adapter(client)
        self._team_ids: List[str] = []
        self._current_team_id: Optional[str] = None
        self._members_team_id: Optional[str] = None

        self.team_store: EntityStore[Team] = EntityStore("teams")
        self.member_store: EntityStore[TeamMember] = EntityStore("team_members")
        self.team_coordinator: MutationCoordinator[Team] = MutationCoordinator(
            self.team_store,
            self._team_adapter,
            scope=lambda: {"id": list(self._team_ids)},
            entity="teams",
            label="Team",
            notices=self._notices,
            identity=identity,
            log_queue=log_queue,
        )
        self.member_coordinator: MutationCoordinator[TeamMember] = MutationCoordinator(
            self.member_store,
            ProfiledMemberAdapter(client),
            scope=lambda: {"team_id": self._members_team_id},
            entity="team_members",
            label="Member",
            notices=self._notices,
            identity=identity,
            log_queue=log_queue,
        )

    # ── State ──

    @property
    def teams(self) -> List[Team]:
        return self.team_store.list()

    @property
    def current_team(self) -> Optional[Team]:
        if self._current_team_id is None:
            return None
        return self.team_store.get_by_id(self._current_team_id)

    @property
    def team_members(self) -> List[TeamMember]:
        return self.member_store.list()

    def member_ids(self) -> List[str]:
        """User ids of the current team's members."""
        return [m.user_id for m in self.member_store.list()]

    # ── Loading ──

    async def _load(self, reason: str) -> MutationResult[List[Team]]:
        user = self._identity()
        if user is None:
            self._team_ids = []
            self._current_team_id = None
            self._members_team_id = None
            self.team_store.clear()
            self.member_store.clear()
            return MutationResult.success([])

        try:
            memberships = await self._memberships.fetch_all({"user_id": user.id})
        except TaskifyError as e:
            return self._fail("teams", "load", e, "Error fetching teams")

        self._team_ids = list(dict.fromkeys(m.team_id for m in memberships))
        if self._team_ids:
            result = await self.team_coordinator.refresh(reason)
            if not result.ok:
                return result
        else:
            self.team_store.clear()

        if self.current_team is None:
            teams = self.team_store.list()
            self._current_team_id = teams[0].id if teams else None

        await self._load_members(self._current_team_id, reason)
        return MutationResult.success(self.team_store.list())

    async def _load_members(self, team_id: Optional[str], reason: str) -> MutationResult[List[TeamMember]]:
        self._members_team_id = team_id
        if team_id is None:
            self.member_store.clear()
            return MutationResult.success([])
        return await self.member_coordinator.refresh(reason)

    async def load_team_members(self, team_id: Optional[str] = None) -> MutationResult[List[TeamMember]]:
        """Load the members of ``team_id`` (default: the current team) with profiles."""
        return await self._load_members(team_id or self._current_team_id, "load_members")

    async def set_current_team(self, team: Union[Team, str, None]) -> MutationResult[List[TeamMember]]:
        team_id = team.id if isinstance(team, Team) else team
        self._current_team_id = team_id
        return await self._load_members(team_id, "switch_team")

    # ── Teams ──

    async def create_team(self, name: str, description: Optional[str] = None) -> MutationResult[Team]:
        """
        Create a team with a server-issued join code and add the creator as
        its admin. The new team becomes the current team.
        """
        user = self._identity()
        if user is None:
            return self._fail("teams", "create", self._no_user_error("teams", "create"), "Error creating team")

        try:
            draft = TeamDraft(name=name, description=description)
        except ValidationError as e:
            error = PreconditionFailedError(
                "Invalid team", entity="teams", operation="create",
                reason="invalid_draft", validation_errors=e.errors(),
            )
            return self._fail("teams", "create", error, "Error creating team")

        try:
            join_code = await generate_join_code(self._client)
            team = await self._team_adapter.create({
                "name": draft.name,
                "description": draft.description,
                "created_by": user.id,
                "join_code": join_code,
            })
            await self._memberships.create({
                "team_id": team.id,
                "user_id": user.id,
                "role": TeamRole.ADMIN,
            })
        except TaskifyError as e:
            return self._fail("teams", "create", e, "Error creating team")

        self._current_team_id = team.id
        result = await self._load("create_team")
        if not result.ok or team.id not in self.team_store:
            self.team_store.upsert(team)
        logger.info(f"Team '{team.name}' ({team.id}) created by {user.id}")
        self._notices.notify(info("Team created", f'The team "{draft.name}" has been created successfully.'))
        return MutationResult.success(team)

    async def update_team(self, team_id: str, patch: Union[TeamPatch, Mapping[str, Any]]) -> MutationResult[Team]:
        if not isinstance(patch, TeamPatch):
            try:
                patch = TeamPatch.model_validate(patch)
            except ValidationError as e:
                error = PreconditionFailedError(
                    "Invalid team changes", entity="teams", operation="update",
                    entity_id=team_id, reason="invalid_patch", validation_errors=e.errors(),
                )
                return self._fail("teams", "update", error, "Error updating team")
        return await self.team_coordinator.update(team_id, patch.changes())

    async def delete_team(self, team_id: str) -> MutationResult[Team]:
        result = await self.team_coordinator.delete(team_id)
        if result.ok:
            self._team_ids = [t for t in self._team_ids if t != team_id]
            if self._current_team_id == team_id:
                await self._select_first()
        return result

    async def join_team_by_code(self, code: str) -> MutationResult[Team]:
        """Join the team with ``code``. Joining a team twice is a success without an insert."""
        user = self._identity()
        if user is None:
            return self._fail("team_members", "join", self._no_user_error("team_members", "join"), "Error joining team")

        try:
            matches = await self._team_adapter.fetch_all({"join_code": code.strip()})
            if not matches:
                raise RemoteRejectedError(
                    "Invalid team code or team not found",
                    entity="teams", operation="join", reason="invalid_join_code",
                )
            team = matches[0]
            existing = await self._memberships.fetch_all({"team_id": team.id, "user_id": user.id})
            if existing:
                self._notices.notify(info("Already a member", "You are already a member of this team."))
                return MutationResult.success(team)
            await self._memberships.create({
                "team_id": team.id,
                "user_id": user.id,
                "role": TeamRole.MEMBER,
            })
        except TaskifyError as e:
            return self._fail("team_members", "join", e, "Error joining team")

        self._current_team_id = team.id
        await self._load("join_team")
        self._notices.notify(
            info("Team joined", f'You have successfully joined the team "{team.name}".')
        )
        return MutationResult.success(team)

    async def leave_team(self, team_id: str) -> MutationResult[Team]:
        """Leave a team. Its creator cannot leave; they delete it instead."""
        user = self._identity()
        if user is None:
            return self._fail("team_members", "leave", self._no_user_error("team_members", "leave"), "Error leaving team")

        team = self.team_store.get_by_id(team_id)
        if team is not None and team.created_by == user.id:
            error = PreconditionFailedError(
                "As the team creator, you cannot leave the team. You must delete it instead.",
                entity="teams", operation="leave", entity_id=team_id, reason="creator_cannot_leave",
            )
            return self._fail("team_members", "leave", error, "Error leaving team")

        try:
            await self._client.delete("team_members", {"team_id": team_id, "user_id": user.id})
        except TaskifyError as e:
            return self._fail("team_members", "leave", e, "Error leaving team")

        self.team_store.remove(team_id)
        self._team_ids = [t for t in self._team_ids if t != team_id]
        if self._current_team_id == team_id:
            await self._select_first()
        self._notices.notify(info("Team left", "You have successfully left the team."))
        return MutationResult.success(team)

    async def _select_first(self) -> None:
        teams = self.team_store.list()
        await self.set_current_team(teams[0] if teams else None)

    # ── Members ──

    async def change_member_role(
        self,
        member_id: str,
        role: Union[TeamRole, str],
    ) -> MutationResult[TeamMember]:
        try:
            patch = TeamMemberPatch(role=role)
        except ValidationError as e:
            error = PreconditionFailedError(
                f"Invalid role {role!r}", entity="team_members", operation="update",
                entity_id=member_id, reason="invalid_role", validation_errors=e.errors(),
            )
            return self._fail("team_members", "update", error, "Error changing role")
        return await self.member_coordinator.update(member_id, patch.changes())

    async def remove_member(self, member_id: str) -> MutationResult[TeamMember]:
        return await self.member_coordinator.delete(member_id)

    def members_by_role(self) -> Dict[TeamRole, List[TeamMember]]:
        grouped: Dict[TeamRole, List[TeamMember]] = {role: [] for role in TeamRole}
        for member in self.member_store.list():
            grouped[member.role].append(member)
        return grouped

    # ── Change feed ──

    def _announce(self, event: ChangeEvent) -> None:
        if event.kind == ChangeKind.CREATED:
            self._notices.notify(info("Team updated", "A member joined a team"))
        elif event.kind == ChangeKind.DELETED:
            self._notices.notify(info("Team updated", "A member left a team"))
