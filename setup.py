from setuptools import setup, find_packages

setup(
    name="flipper-client",
    version="0.1.0",
    packages=find_packages(include=["flipper_client", "flipper_client.*"]),
    install_requires=[
        "aiohttp>=3.8",
        "yarl",
        "pydantic>=2",
        "pydantic-settings>=2",
        "python-dotenv",
        "opentelemetry-api",
        "opentelemetry-sdk",
        "opentelemetry-exporter-otlp-proto-http",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "pytest-mock",
        ],
    },
    entry_points={
        "console_scripts": [
            "flipper-client=flipper_client.main:main",
        ],
    },
    python_requires=">=3.9",
)
