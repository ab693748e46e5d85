from setuptools import setup, find_packages

setup(
    name="multistate_cea",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    install_requires=[
        "numpy>=1.23.0",
        "pandas>=2.0.0",
        "scipy>=1.10.0",
        "networkx>=3.0",
        "tqdm>=4.65.0",
        "joblib>=1.3.0",
    ],
    extras_require={
        "dev": ["pytest>=7.3.1"],
    },
    python_requires=">=3.9",
    author="Deniz Akdemir, github: denizakdemir",
    author_email="denizakdemir@gmail.com",
    description="Probabilistic cost-effectiveness analysis with semi-Markov multistate microsimulation",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    url="https://github.com/denizakdemir/multistate_cea",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
