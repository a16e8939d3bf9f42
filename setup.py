from setuptools import setup, find_packages

setup(
    name="tmbackup",
    version="0.1.0",
    description="Time Machine like backups with rsync",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.8",
    install_requires=[
        "psutil",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        'console_scripts': [
            'tmbackup=tmbackup.cli:main',
        ],
    },
)
