from setuptools import setup, find_namespace_packages

# Read the contents of requirements file
with open("requirements.txt") as f:
    requirements = f.read().splitlines()

setup(
    name="mip-verify",
    version="0.1",
    packages=find_namespace_packages(include=["mip_verify", "mip_verify.*"]),
    install_requires=requirements,
    extras_require={"test": ["pytest"]},
)
