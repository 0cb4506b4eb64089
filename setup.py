from setuptools import setup, find_packages

setup(
    name="autoprov",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    install_requires=[
        "rich",
        "requests",
        "urllib3",
        "python-dotenv",
        "toml",
        "rich-argparse",
        "PyJWT",
        "cryptography>=42",
        "asn1crypto",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "autoprov=autoprov.cli:main",
        ],
    },
)
