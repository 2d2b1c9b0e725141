[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "queuekit"
version = "0.1.0"
description = "Producers and consumers for beanstalkd, Kafka and Pulsar behind one small queue interface"
requires-python = ">=3.10"
dependencies = [
    "redis",
]
keywords = [
    "queue",
    "message-queue",
    "beanstalkd",
    "kafka",
    "pulsar",
    "delayed-jobs",
    "producer",
    "consumer",
]
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
    "Topic :: System :: Distributed Computing",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["queuekit"]

[tool.hatch.build.targets.sdist]
include = [
    "queuekit",
    "tests",
]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
