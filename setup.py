from setuptools import setup, find_namespace_packages

setup(
    name="sdbx",
    version="0.1.0",
    packages=find_namespace_packages(where="src"),
    package_dir={"": "src"},
    package_data={"sdbx.REGISTRY": ["services/*/*/*.yaml"]},
    include_package_data=True,
    python_requires=">=3.9",
    install_requires=[
        "pydantic>=2.5",
        "pyyaml>=6.0",
        "click>=8.0",
        "tenacity>=8.0",
        "python-dotenv>=1.0",
        "jinja2>=3.0",
        "tzdata",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "sdbx=sdbx.CLI.main:main",
        ],
    },
)
