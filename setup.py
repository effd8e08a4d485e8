"""
feedscribe — setuptools build script.

Usage:
    # Development (editable install):
    pip install -e .[test]

    # Run:
    feedscribe-transcribe path/to/audio.mp3 --optimize

Requires ffmpeg/ffprobe on PATH for slicing files above the upload cap.
"""

from setuptools import setup, find_namespace_packages

APP_NAME = "feedscribe"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Background transcription and transcript clean-up service",
    packages=find_namespace_packages(include=["feedscribe", "feedscribe.*"]),
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
        "numpy>=1.23",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "feedscribe-transcribe=main:main",
        ],
    },
)
