"""Setup configuration for convertctl."""

from setuptools import setup, find_packages

setup(
    name="convertctl",
    version="1.0.0",
    description="Hardware-aware media conversion queue with bounded-concurrency FFmpeg orchestration",
    packages=find_packages(include=["convertctl", "convertctl.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "convertctl=convertctl.cli:cli",
        ],
    },
    python_requires=">=3.8",
)
