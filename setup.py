from setuptools import setup, find_packages

setup(
    name="codemend",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "click",
        "pyyaml",
        "structlog",
        "gitignore-parser",
        "pydantic>=2",
        "rich",
        "sqlalchemy>=2",
        "fastapi",
        "uvicorn",
        "httpx",
        "backoff",
        "openai>=1",
        "anthropic",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-httpserver",
        ],
    },
    entry_points={
        "console_scripts": [
            "codemend = codemend.cli.main:main",
        ],
    },
)
