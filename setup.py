"""
Taskify setup.py — Package configuration.
"""

from setuptools import find_packages, setup

setup(
    name="taskify",
    version="1.0.0",
    description="Taskify — client-side cache and sync layer for tasks and teams",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.11",
    install_requires=[
        "pydantic>=2.5",
        "redis>=5.0.1",
        "pyyaml>=6.0",
        "httpx>=0.27",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
)
