"""Setup file for development installation."""

from setuptools import setup, find_namespace_packages

setup(
    name="skyhammer-chat",
    version="0.1.0",
    packages=find_namespace_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "fastapi",
        "uvicorn",
        "python-multipart",
        "pydantic>=2",
        "structlog",
        "google-generativeai",
        "google-api-core",
        "prometheus-client",
        "opentelemetry-instrumentation-fastapi",
        "python-dotenv",
        "Pillow",
        "pytesseract",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)
