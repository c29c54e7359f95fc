import setuptools

with open(file="README.md", mode="r", encoding="utf-8") as file:
    long_description = file.read()

setuptools.setup(
    name="aranet-btle",
    version="0.1.0",
    description="Aranet4 Bluetooth LE client",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests"]),
    python_requires=">=3.9",
    classifiers=[
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent"
    ],
    install_requires=[
        "bleak>=1.0",
        "requests"
    ],
    entry_points={
        "console_scripts": ["aranetctl=aranet_btle.aranetctl:entry_point"]
    }
)
