from setuptools import setup, find_packages

setup(
    name="vaultscribe",
    version="0.1.0",
    description="Encrypted voice recording & transcription pipeline",
    author="",
    python_requires=">=3.9",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "cryptography>=41.0.0",
        "rich>=12.5.0",
        "click>=8.1.0",
        "pydantic>=2.0.0",
        "pyyaml>=6.0.0",
        "pypubsub>=4.0.3",
        "aiohttp>=3.8.0",
    ],
    extras_require={
        "local": [
            "faster-whisper>=1.0.0",
        ],
        "test": [
            "pytest>=7.0.0",
            "numpy>=1.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "vaultscribe=vaultscribe.main:main",
        ],
    },
)
