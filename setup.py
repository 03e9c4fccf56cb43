"""
InspectOS setup.py — Package configuration and CLI entry point.
"""

from setuptools import find_packages, setup

setup(
    name="inspectos",
    version="1.0.0",
    description="InspectOS — recurring inspection scheduling, task and hazard lifecycle",
    packages=find_packages(include=["inspectos", "inspectos.*"]),
    python_requires=">=3.11",
    entry_points={
        "console_scripts": [
            "inspectos=inspectos.cli:main",
        ],
    },
    install_requires=[
        "sqlalchemy>=2.0",
        "psycopg2-binary>=2.9",
        "pydantic>=2.5",
        "celery[redis]>=5.3",
        "pyyaml>=6.0",
        "httpx>=0.27",
        "fastapi>=0.110",
        "uvicorn>=0.29",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
        ],
    },
)
