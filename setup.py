"""Setup for Usage Tray, with py2app bundling options."""

from setuptools import setup

APP = ["main.py"]
DATA_FILES = []
OPTIONS = {
    "argv_emulation": False,
    "plist": {
        "LSUIElement": True,  # Hide dock icon (menu bar app)
        "CFBundleName": "Usage Tray",
        "CFBundleShortVersionString": "0.1.0",
    },
    "packages": ["rumps", "requests", "PIL"],
}

setup(
    name="usage-tray",
    version="0.1.0",
    description="Menu bar gauge for AI coding plan usage",
    python_requires=">=3.10",
    py_modules=[
        "config",
        "main",
        "pace",
        "probe_feed",
        "scoped_label",
        "snapshots",
        "tray_icon",
        "tray_progress",
        "tray_scheduler",
    ],
    packages=["providers"],
    install_requires=[
        "Pillow>=10.1",
        "requests",
        "rumps; sys_platform == 'darwin'",
        "pyobjc-framework-Cocoa; sys_platform == 'darwin'",
    ],
    extras_require={
        "test": ["pytest"],
        "app": ["py2app"],
    },
    entry_points={"gui_scripts": ["usage-tray = main:main"]},
    app=APP,
    data_files=DATA_FILES,
    options={"py2app": OPTIONS},
)
