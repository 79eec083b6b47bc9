from setuptools import setup, find_packages

setup(
    name="netssh",
    version="0.1.0",
    description="Byte stream tunnels over ssh forced commands with file descriptor hand-off",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[],
    extras_require={
        "test": [
            "pytest>=8.3.2,<9.1",
            "pytest-asyncio>=0.24.0",
            "asyncssh>=2.14.0",
            "docker>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "netssh=netssh.cli:main",
        ],
    },
    python_requires=">=3.10",
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX",
    ],
)
