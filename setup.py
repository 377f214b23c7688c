from setuptools import setup, find_packages

setup(
    name="campaign-experiment-engine",
    version="1.0.0",
    package_dir={"": "src"},
    packages=find_packages(where="src", exclude=["tests", "tests.*"]),
    python_requires=">=3.8",
    install_requires=[
        "pandas>=1.5.0",
        "numpy>=1.21.0",
        "scipy>=1.7.0",
        "Jinja2>=3.0.0",
        "pydantic-settings>=2.0.0",
    ],
    extras_require={
        "test": ["pytest>=7.0.0"],
    },
)
