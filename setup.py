"""Setup configuration for the Sanctionkeeper Discord bot."""

from setuptools import setup, find_packages

setup(
    name="sanctionkeeper",
    version="0.1.0",
    description="A Discord bot for timed mutes and role changes that are always reversed on time",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.11",
    install_requires=[
        "py-cord>=2.6",
        "aiosqlite>=0.20",
        "PyYAML>=6.0",
        "prompt_toolkit>=3.0",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "sanctionkeeper=sanctionkeeper.main:main",
        ],
    },
)
