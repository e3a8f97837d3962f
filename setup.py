"""
Installs SimFitPy
"""

import re

from setuptools import find_packages, setup


# Get package information
def get_package_info():
    """
    Gets version information for the installation.
    """
    # Set up variables
    package_version = None

    # Open the file containing version info
    with open("simfitpy/__init__.py", "r", encoding="utf-8") as file:
        for line in file:
            # Check version
            if match_obj := re.match(r"__version__.+([0-9]+\.[0-9]+\.[0-9]+)", line):
                package_version = match_obj.group(1)

    # Checks on variables
    if package_version is None:
        raise IOError("Could not find information on version.")

    return package_version


# Run setup
setup(
    name="simfitpy",
    version=get_package_info(),
    description=(
        "Simulate, fit, and diagnose Bayesian hierarchical models with PyTorch."
    ),
    license="MIT",
    python_requires=">=3.10",
    packages=find_packages(include=["simfitpy", "simfitpy.*"]),
    install_requires=[
        "arviz>=0.18,<1.0",
        "dask",
        "h5netcdf",
        "numpy",
        "pandas",
        "scipy",
        "torch",
        "tqdm",
        "typeguard>=4.0",
        "xarray",
    ],
    extras_require={"test": ["pytest"]},
    entry_points={
        "console_scripts": [
            "simfitpy-trial=simfitpy.pipelines.run_trial:main",
            "simfitpy-calibrate=simfitpy.pipelines.run_calibration:main",
        ]
    },
)
