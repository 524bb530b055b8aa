from setuptools import setup, find_packages


setup(
    name="dirsnap",
    version="0.1",
    packages=find_packages(include=["dirsnap", "dirsnap.*"]),
    description="Directory archives and file backups with identical-content detection and integrity verification.",
    install_requires=[
        "PyYAML>=6.0",
    ],
    entry_points={
        "console_scripts": [
            "dirsnap=dirsnap.cli:main",
        ]
    },
)
