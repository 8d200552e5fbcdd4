"""Setup script for the planflow package."""

from setuptools import setup, find_packages

setup(
    name="planflow",
    version="0.1.0",
    packages=find_packages(include=["planflow", "planflow.*"]),
    python_requires=">=3.10",
    install_requires=[
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "structlog>=23.1",
        "prometheus-client>=0.17",
        "tenacity>=8.2",
        "httpx>=0.25",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.21",
        ],
    },
    description="planflow - plan generation, validation and resilient execution of agent task pipelines",
    author="planflow Team",
)
