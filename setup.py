from setuptools import find_packages, setup

setup(
    name="dispersal",
    packages=find_packages(include=["dispersal", "dispersal.*"]),
    version="0.1.0.dev0",
    description="Gravity-model human-driven dispersal for grid simulations, with precomputed destination shortlists",
    author="Adam Amer",
    license="MIT License",
    python_requires=">=3.11",
    install_requires=[
        "numpy>=1.26",
        "polars>=1.0",
        "beartype>=0.20",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-cov",
            "typeguard",
        ],
    },
)
