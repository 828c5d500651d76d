#!/usr/bin/env python3
"""Setup script for the work study state monitor."""

from setuptools import find_packages, setup

setup(
    name="workstudy",
    version="1.0.0",
    description="Real-time work-element state monitoring from pose, hand and object detections",
    python_requires=">=3.9",
    packages=find_packages(include=["workstudy", "workstudy.*"]),
    install_requires=[
        "numpy",
        "pydantic>=2",
        "PyYAML",
        "pandas",
        "jsonlines",
        "fastapi",
        "uvicorn",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
        ],
    },
)
