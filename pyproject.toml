[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "calert"
version = "2.0.0"
description = "Forward Alertmanager webhook notifications to Google Chat rooms"
requires-python = ">=3.11"
keywords = ["alertmanager", "prometheus", "google-chat", "alerting", "webhook"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Web Environment",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "jinja2>=3.1",
    "requests>=2.31",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
    "responses>=0.24",
]

[project.scripts]
calert = "calert.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["calert"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
