from setuptools import setup, find_packages

setup(
    name="roomsync",
    version="0.1",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    python_requires=">=3.9",
    install_requires=[
        "SQLAlchemy>=2.0",
        "pydantic>=2.0",
        "aiortc>=1.6",
        "av",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "roomsync-housekeeper = roomsync.housekeeper:main",
        ],
    },
)
