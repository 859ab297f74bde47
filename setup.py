# setup.py
from setuptools import setup, find_packages

setup(
    name="pairpool",
    version="0.1.0",
    packages=find_packages(include=["pairpool", "pairpool.*"]),
    python_requires=">=3.9",
    install_requires=[
        "msgpack",            # pool state encoding
        "prometheus_client",  # metrics
        "psutil",             # monitoring
    ],
    extras_require={
        "test": ["pytest"],
    },
)
