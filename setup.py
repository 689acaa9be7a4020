"""Setup script for the agentflow package."""

from setuptools import setup, find_packages

setup(
    name="agentflow-orchestrator",
    version="0.1.0",
    packages=find_packages(include=["agentflow", "agentflow.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.2",
        "prometheus-client>=0.19",
        "tenacity>=8.2",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    description="agentflow - multi-step plan orchestration for autonomous agents",
    author="agentflow Team",
)
