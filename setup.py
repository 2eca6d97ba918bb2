"""Setup script for the TRMNL device emulator."""

import os
from pathlib import Path

from setuptools import find_packages, setup
from setuptools.command.develop import develop
from setuptools.command.install import install


def post_install_setup():
    """Post-installation setup to create the state directory and show usage guidance."""
    try:
        config_dir = Path.home() / ".config" / "trmnl-emulator"
        config_dir.mkdir(parents=True, exist_ok=True)
        if hasattr(os, "chmod"):
            os.chmod(config_dir, 0o700)

        if not (config_dir / "device.json").exists():
            print("\n" + "=" * 60)
            print("TRMNL Emulator Installation Complete!")
            print("=" * 60)
            print(f"State directory: {config_dir}")
            print("\nNext Steps:")
            print("1. Run 'trmnl-emulator --api-key YOUR_KEY' to start the device")
            print("2. Or put TRMNL_API_KEY=... in a .env file in the working directory")
            print("3. Run 'trmnl-emulator --help' to see all available options")
            print("=" * 60)

    except Exception as e:
        print(f"Warning: Post-install setup failed: {e}")
        print("You may need to create ~/.config/trmnl-emulator manually.")


class PostInstallCommand(install):
    """Custom install command with post-install setup."""

    def run(self):
        install.run(self)
        post_install_setup()


class PostDevelopCommand(develop):
    """Custom develop command with post-install setup."""

    def run(self):
        develop.run(self)
        post_install_setup()


# Read the README file
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""

# Read requirements, separating test-only dependencies
requirements_file = Path(__file__).parent / "requirements.txt"
requirements = []
dev_requirements = []

if requirements_file.exists():
    content = requirements_file.read_text().strip()
    lines = content.split("\n")

    for line in lines:
        line = line.strip()
        # Skip empty lines and comments
        if not line or line.startswith("#"):
            continue

        if "pytest" in line:
            dev_requirements.append(line)
        else:
            requirements.append(line)

setup(
    name="trmnl-emulator",
    version="0.1.0",
    description="Desktop emulator for TRMNL e-ink display devices",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="TRMNL Emulator Team",
    # Package configuration
    packages=find_packages(include=["trmnl_emulator", "trmnl_emulator.*"]),
    include_package_data=True,
    # Dependencies
    install_requires=requirements,
    extras_require={
        "test": dev_requirements,
        "dev": dev_requirements
        + [
            "black>=23.0.0",
            "isort>=5.12.0",
            "mypy>=1.0.0",
        ],
    },
    python_requires=">=3.10",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Environment :: Console",
        "Environment :: X11 Applications",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Operating System :: MacOS",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Emulators",
        "Topic :: Multimedia :: Graphics :: Viewers",
        "Framework :: AsyncIO",
    ],
    keywords="trmnl e-ink epaper display emulator byod async",
    entry_points={
        "console_scripts": [
            "trmnl-emulator=trmnl_emulator.main:main",
        ],
    },
    package_data={
        "trmnl_emulator": ["py.typed"],
    },
    cmdclass={
        "install": PostInstallCommand,
        "develop": PostDevelopCommand,
    },
    zip_safe=False,
    platforms=["linux", "macos"],
)
