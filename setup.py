"""Build NexusRelay package."""
import setuptools

with open("README.md") as f:
    long_desc = f.read()

setuptools.setup(
    name="nexusrelay",
    version="0.1.0",
    description="Peer discovery and WebRTC signaling relay for P2P overlays",
    long_description=long_desc,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(include=["nexusrelay", "nexusrelay.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.10",
    install_requires=[
        "click>=8.0",
        "pydantic>=2.0",
        "tomli>=1.1.0; python_version<'3.11'",
        "tomli-w>=1.0",
        "typing-extensions>=4.0; python_version<'3.11'",
        "websockets>=13.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-asyncio>=0.23",
            "pytest-timeout",
        ],
    },
    entry_points={
        "console_scripts": [
            "nexusrelay = nexusrelay.run:cli",
        ],
    },
)
