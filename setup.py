from setuptools import setup, find_packages

setup(
    name="aias-platform",
    version="0.1.0",
    packages=find_packages(include=["aias", "aias.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "starlette",
        "pydantic>=2",
        "pydantic-settings>=2.7",
        "httpx",
        "redis>=5",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "respx",
        ],
    },
)
