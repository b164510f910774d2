from setuptools import setup, find_packages

setup(
    name="sde_pricing",
    version="0.1.0",
    description="Composable stochastic dynamics, Monte Carlo simulation and Longstaff-Schwartz valuation",
    author="Uri Maayan",
    author_email="uriuriuri7@hotmail.com",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "numpy>=1.20.0",
        "numba>=0.53.0",
        "scipy>=1.7.0",
        "pandas>=1.3.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "Intended Audience :: Financial and Insurance Industry",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering :: Mathematics",
    ],
    python_requires=">=3.8",
)
