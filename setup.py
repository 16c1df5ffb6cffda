"""Set up the gitmap package."""
import json
from pathlib import Path

from setuptools import find_packages, setup

DESCRIPTION = (
    "A web service to create, browse and operate on git repositories"
    " stored in a relational database."
)

REQUIREMENTS = [
    "fastapi>=0.100.0",
    "pydantic>=2.6.1",
    "typing-extensions>=3.7.4.3",  # required by pydantic
    "python-dotenv>=0.19.0",
    "python-jose>=3.3.0",
    "python-multipart>=0.0.6",
    "uvicorn>=0.23.2",
    "httpx>=0.24.0",
    "sqlalchemy[asyncio]>=2.0.35",
    "aiosqlite>=0.20.0",
    "sqlmodel>=0.0.22",
    "bcrypt>=4.0.0",
    "dulwich>=0.22.0",
]

ROOT_DIR = Path(__file__).parent.resolve()
README_FILE = ROOT_DIR / "README.md"
LONG_DESCRIPTION = README_FILE.read_text(encoding="utf-8")
VERSION_FILE = ROOT_DIR / "gitmap" / "VERSION"
VERSION = json.loads(VERSION_FILE.read_text(encoding="utf-8"))["version"]


setup(
    name="gitmap",
    version=VERSION,
    description=DESCRIPTION,
    long_description=LONG_DESCRIPTION,
    long_description_content_type="text/markdown",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    include_package_data=True,
    package_data={"gitmap": ["VERSION"]},
    install_requires=REQUIREMENTS,
    extras_require={
        "postgres": ["asyncpg>=0.30.0"],
        "tests": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
    zip_safe=False,
    entry_points={"console_scripts": ["gitmap = gitmap.__main__:main"]},
)
