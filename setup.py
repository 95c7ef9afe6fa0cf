"""
ClipCutter setuptools / py2app build script.

Usage:
    # Development install:
    pip install -e .[test]

    # Development app bundle (alias mode, links to source):
    python3 setup.py py2app -A

    # Distribution (standalone):
    python3 setup.py py2app

The built app will be in the dist/ directory.
"""

import os
import sys
from setuptools import setup, find_namespace_packages

APP = ["main.py"]
APP_NAME = "ClipCutter"
VERSION = "1.0.0"

DATA_FILES = []

# Check if .icns icon exists (user builds it on macOS)
ICON_FILE = "AppIcon.icns" if os.path.exists("AppIcon.icns") else None

PY2APP_OPTIONS = {
    "argv_emulation": False,
    "plist": {
        "CFBundleName": APP_NAME,
        "CFBundleDisplayName": "ClipCutter",
        "CFBundleIdentifier": "com.local.clipcutter",
        "CFBundleVersion": VERSION,
        "CFBundleShortVersionString": VERSION,
        "CFBundlePackageType": "APPL",
        "LSMinimumSystemVersion": "10.15",
        "NSHumanReadableCopyright": "Local use only",
        "LSUIElement": False,
        "NSHighResolutionCapable": True,
        "LSEnvironment": {
            "PYTHONDONTWRITEBYTECODE": "1",
        },
    },
    "packages": [
        "clipcutter",
        "clipcutter.core",
        "requests",
    ],
    "excludes": [
        "PyQt5", "PyQt6", "PySide2", "PySide6", "tkinter",
        "matplotlib", "numpy", "scipy", "pandas",
        "PIL", "cv2", "torch", "tensorflow",
        "pytest", "unittest",
    ],
    "site_packages": True,
}

# Add icon if available
if ICON_FILE:
    PY2APP_OPTIONS["iconfile"] = ICON_FILE

extra = {}
if "py2app" in sys.argv:
    extra = {
        "app": APP,
        "data_files": DATA_FILES,
        "options": {"py2app": PY2APP_OPTIONS},
        "setup_requires": ["py2app"],
    }

setup(
    name="clipcutter",
    version=VERSION,
    description="Local macOS YouTube clip cutter (yt-dlp + ffmpeg)",
    packages=find_namespace_packages(include=["clipcutter", "clipcutter.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": ["clipcutter=main:main"],
    },
    **extra,
)
