"""Setup for MedChat Python SDK"""

from setuptools import setup, find_packages

setup(
    name="medchat-sdk",
    version="0.1.0",
    description="Python SDK for the MedChat session service",
    author="MedChat Team",
    packages=find_packages(),
    install_requires=[
        "httpx>=0.25.2",
    ],
    python_requires=">=3.11",
)
