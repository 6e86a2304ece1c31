"""
Setup script for chatmem package
"""

from setuptools import find_packages, setup


with open("requirements.txt") as f:
    requirements = [line.strip() for line in f if line.strip() and not line.startswith("#")]

setup(
    name="chatmem",
    version="0.1.0",
    description="Hybrid keyword and vector retrieval over chat memories",
    packages=find_packages(include=["chatmem", "chatmem.*"]),
    python_requires=">=3.10",
    install_requires=requirements,
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
            "freezegun>=1.2",
        ],
    },
    entry_points={
        "console_scripts": [
            "chatmem=chatmem.cli:app",
        ],
    },
    include_package_data=True,
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)
