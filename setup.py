"""Setup script for the agentrelay package."""

from setuptools import setup, find_packages

setup(
    name="agentrelay",
    version="0.1.0",
    packages=find_packages(exclude=("tests", "tests.*", "alembic", "alembic.*")),
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.2",
        "PyJWT>=2.8",
        "httpx>=0.25",
        "asyncpg>=0.29",
        "SQLAlchemy>=2.0",
        "alembic>=1.12",
        "prometheus-client>=0.19",
        "langchain-core>=0.2",
    ],
    extras_require={
        "ollama": ["langchain-ollama>=0.1"],
        "test": ["pytest>=7.4", "pytest-asyncio>=0.23"],
    },
    description="AgentRelay - task lifecycle, context handoff and real-time events for conversational agents",
    author="AgentRelay Team",
)
