from setuptools import setup, find_packages

setup(
    name="mpv-remote",
    version="0.1.0",
    description="Remotely controllable MPV media player daemon",
    packages=find_packages(include=["src", "src.*"]),
    python_requires=">=3.8",
    install_requires=[
        "PyYAML>=6.0",
        "pyzmq>=25.0",
        "python-mpv>=1.0.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "black>=23.0.0",
            "pylint>=2.17.0",
        ]
    },
    entry_points={
        "console_scripts": [
            "mpv-remote=src.player.cli:main",
        ]
    },
)
