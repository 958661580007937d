"""Setup script for grub-auto-recovery."""

from setuptools import find_packages, setup

# Read the version from __version__.py
version_dict = {}
with open("grub_recovery/__version__.py") as f:
    exec(f.read(), version_dict)

VERSION = version_dict["__version__"]

setup(
    name="grub-auto-recovery",
    version=VERSION,
    description="Diagnose and safely repair a broken GRUB installation with checkpoints and rollback",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "loguru>=0.7.0",
        "psutil>=5.9.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=4.0.0",
            "pytest-mock>=3.10.0",
            "ruff>=0.1.0",
            "black>=23.0.0",
            "isort>=5.12.0",
            "mypy>=1.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "grub-auto-recovery=grub_recovery.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Boot",
        "Topic :: System :: Recovery Tools",
        "Topic :: Utilities",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: POSIX :: Linux",
    ],
    keywords="grub bootloader recovery repair chroot rollback",
)
