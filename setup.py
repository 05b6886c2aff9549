#!/usr/bin/env python3
"""
Setup script for mailseal.

Install with `pip install .` or, for development, `pip install -e '.[dev]'`.
"""

import re
import sys
from pathlib import Path

if sys.version_info < (3, 11):
    sys.exit("Error: mailseal requires Python 3.11 or higher.")

try:
    from setuptools import find_packages, setup
except ImportError:
    sys.exit("Error: setuptools is required. Install it with: pip install setuptools")

# Read version from __version__.py for consistency
version_file = Path(__file__).parent / "src" / "mailseal" / "__version__.py"
version_match = re.search(
    r'^__version__\s*=\s*["\']([^"\']+)["\']',
    version_file.read_text(encoding="utf-8"),
    re.M,
)
version = version_match.group(1) if version_match else "0.1.0"

# Read long description from README if available
readme_path = Path(__file__).parent / "README.md"
if readme_path.exists():
    long_description = readme_path.read_text(encoding="utf-8")
    long_description_content_type = "text/markdown"
else:
    long_description = "PGP key trust reconciliation and secure compose"
    long_description_content_type = "text/plain"

# Core dependencies
install_requires = [
    "python-gnupg>=0.5.2",
    "pydantic>=2.5.0",
    "pydantic-settings>=2.1.0",
    "requests>=2.31.0",
]

# Development dependencies
extras_require = {
    "dev": [
        "pytest>=7.4.0",
        "pytest-asyncio>=0.21.0",
    ],
}

setup(
    name="mailseal",
    version=version,
    description="PGP key trust reconciliation and secure compose",
    long_description=long_description,
    long_description_content_type=long_description_content_type,
    author="mailseal developers",
    license="MIT",
    python_requires=">=3.11",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=install_requires,
    extras_require=extras_require,
    entry_points={
        "console_scripts": [
            "mailseal=mailseal.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Communications :: Email",
        "Topic :: Security :: Cryptography",
    ],
    keywords=["email", "encryption", "gpg", "pgp", "keyring"],
)
