from setuptools import setup, find_packages

setup(
    name="phenoflow",
    version="0.3.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    package_data={"phenoflow": ["config.yaml"]},
    install_requires=[
        "click>=8.0",
        "requests>=2.25",
        "boto3>=1.26",
        "botocore>=1.29",
        "geopandas>=0.14",
        "python-dotenv>=1.0",
        "rich>=13.0",
        "shapely>=2.0",
        "python-dateutil>=2.8",
        "tenacity>=8.2.0",
        "pyyaml>=6.0",
        "numpy>=1.25",
        "pyproj>=3.4",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "phenoflow=phenoflow.cli.app:cli",
        ],
    },
    python_requires=">=3.9",
)
