"""Setup script for the ScholarFlow package."""

from setuptools import setup, find_packages

setup(
    name="scholarflow",
    version="0.1.0",
    packages=find_packages(include=["scholarflow", "scholarflow.*"]),
    python_requires=">=3.10",
    install_requires=[
        "fastapi>=0.110",
        "httpx>=0.27",
        "prometheus-client>=0.20",
        "pydantic>=2.6",
        "pydantic-settings>=2.2",
        "structlog>=24.1",
        "tenacity>=8.2",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    description="ScholarFlow - orchestration, rate limiting and cost accounting for multi-agent paper processing",
    author="ScholarFlow Team",
)
