[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "mifarekit"
version = "0.1.0"
description = "MIFARE Classic and MIFARE DESFire command sets over a pluggable NFC device interface"
requires-python = ">=3.10"
dependencies = []
keywords = ["nfc", "mifare", "desfire", "rfid", "smartcard", "iso14443"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["mifarekit"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
