from setuptools import setup, find_packages

setup(
    name="otter-lang",
    version="0.1.0",
    description="Otter — compiler front and middle end for an indentation-sensitive language",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "llvmlite>=0.45.0",
        "PyYAML>=6.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "hypothesis>=6.0",
        ],
    },
)
