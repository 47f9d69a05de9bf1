import pathlib
from setuptools import setup, find_packages

# The directory containing this file
HERE = pathlib.Path(__file__).parent

# The text of the README file
README = (HERE / "README.md").read_text()

# This call to setup() does all the work
setup(
    name="gaittoolbox",
    version="0.1.0",
    description="Batch orchestration of OpenSim musculoskeletal simulations over gait datasets",
    long_description=README,
    long_description_content_type="text/markdown",
    license="MIT",
    classifiers=[
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
    ],
    packages=find_packages(exclude=("tests",)),
    include_package_data=True,
    python_requires=">=3.8",
    install_requires=["numpy", "scipy", "pandas", "psutil"],
    extras_require={
        # OpenSim is mostly distributed through conda (opensim-org::opensim); the engine imports it lazily
        "opensim": ["opensim"],
    },
)
