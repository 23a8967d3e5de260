"""Setup script for simmr package."""

from setuptools import setup, find_packages
from pathlib import Path

# Read README
this_directory = Path(__file__).parent
long_description_path = this_directory / "README.md"

if long_description_path.exists():
    long_description = long_description_path.read_text(encoding='utf-8')
else:
    long_description = "simmr: Bayesian stable isotope mixing models in Python"

# Read version
version = {}
with open(this_directory / "simmr" / "version.py") as f:
    exec(f.read(), version)

setup(
    name="simmr",
    version=version['__version__'],
    author=version['__author__'],
    author_email=version['__email__'],
    description=version['__description__'],
    long_description=long_description,
    long_description_content_type="text/markdown",
    url=version['__url__'],
    packages=find_packages(exclude=["tests", "tests.*", "examples", "docs"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
    python_requires=">=3.11",
    install_requires=[
        "arviz>=0.22.0,<1.0",
        "numpy>=2.3.0",
        "pandas>=2.3.0",
        "scipy>=1.16.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    keywords=[
        "bayesian",
        "stable-isotopes",
        "mixing-models",
        "mcmc",
        "hierarchical-models",
        "ecology",
    ],
)
