#!/usr/bin/env python3

from setuptools import setup
import os

# Read long description safely
long_description = "Sync firewalld zone sources with the DNS addresses of hostnames"
if os.path.exists("README.md"):
    with open("README.md", "r", encoding="utf-8") as f:
        long_description = f.read()

setup(
    name="fw-zone-sync",
    version="2.0.0",
    description="Sync firewalld zone sources with the DNS addresses of hostnames",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=["zone_sync", "zone_sources", "zone_events"],
    python_requires=">=3.8",
    install_requires=[
        "requests>=2.25.0",
        "dnspython>=2.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "fw-zone-sync=zone_sync:main",
        ],
    },
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: System :: Networking :: Firewalls",
        "Topic :: Security",
    ],
)
