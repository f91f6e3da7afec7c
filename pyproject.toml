[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ashakit"
version = "0.1.0"
description = "Bluetooth snoop capture analysis for ASHA hearing-aid streams, plus a G.722 encoder"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "bluetooth",
    "btsnoop",
    "asha",
    "hearing aid",
    "gatt",
    "l2cap",
    "g722",
    "audio codec",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications",
    "Topic :: Multimedia :: Sound/Audio :: Conversion",
    "Topic :: System :: Networking :: Monitoring",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
ashakit-snoop-analyze = "ashakit.analyze:main"
ashakit-g722-encode = "ashakit.g722:main"

[tool.hatch.build.targets.wheel]
packages = ["ashakit"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
