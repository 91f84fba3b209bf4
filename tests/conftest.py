"""
Shared pytest fixtures for the toolchain scripts.

Every test works on a throwaway project directory with its own build.json.
Shell commands are never executed: ``common.run_command`` is replaced by a
recorder that stores each command line and returns canned output.
"""
import json
import os
import subprocess
from pathlib import Path

import pytest

import common
import build_config

SOURCE_DATE_EPOCH = 1700000000

BUILD_JSON = {
    "metadata": {"name": "forge-toolchain", "version": "1.2.3"},
    "build": {
        "directories": {"build": "build", "output": "artifacts", "packages": "packages/downloads"},
        "architecture": {"default": "aarch64", "supported": ["aarch64", "x86_64"]},
        "toolchain": {
            "types": ["musl", "gnu"],
            "default": "musl",
            "versions": {
                "binutils": "2.45",
                "gcc": "15.2.0",
                "musl": "1.2.5",
                "glibc": "2.42",
                "linux": "6.12.49",
            },
        },
        "packages": {
            "binutils": {
                "filename": "binutils-{version}.tar.xz",
                "url": "https://ftp.gnu.org/gnu/binutils/binutils-{version}.tar.xz",
            },
            "gcc": {
                "filename": "gcc-{version}.tar.xz",
                "url": "https://ftp.gnu.org/gnu/gcc/gcc-{version}/gcc-{version}.tar.xz",
            },
            "musl": {
                "filename": "musl-{version}.tar.gz",
                "url": "https://musl.libc.org/releases/musl-{version}.tar.gz",
            },
            "glibc": {
                "filename": "glibc-{version}.tar.xz",
                "url": "https://ftp.gnu.org/gnu/glibc/glibc-{version}.tar.xz",
            },
            "linux": {
                "filename": "linux-{version}.tar.xz",
                "url": "https://cdn.kernel.org/pub/linux/kernel/v{major}.x/linux-{version}.tar.xz",
            },
        },
        "repository": {
            "forge_packages_releases": "https://github.com/ramaedge/forge-packages/releases",
            "forge_packages_version": "v1.0.0",
        },
    },
}

# Variables that would leak the caller's environment into the configuration.
_ENV_OVERRIDES = (
    "ARCH",
    "TOOLCHAIN",
    "BUILD_DIR",
    "ARTIFACTS_DIR",
    "PACKAGES_DIR",
    "DEBUG",
    "LOG_TO_FILE",
    "BINUTILS_VERSION",
    "GCC_VERSION",
    "MUSL_VERSION",
    "GLIBC_VERSION",
    "LINUX_VERSION",
)


class CommandRecorder:
    """Stand-in for common.run_command that records instead of executing."""

    def __init__(self):
        self.commands: list[str] = []
        self.outputs: dict[str, str] = {}
        self.failures: list[str] = []
        self.hooks = []

    def __call__(self, command, ignore_error=False, capture=False, echo=True, dry_run=None):
        self.commands.append(command)
        if dry_run is None and common.command_dry_run.get() or dry_run:
            return None
        if any(pattern in command for pattern in self.failures):
            if ignore_error:
                return None
            raise common.build_step_error(f'Command "{command}" failed with errno=1.')
        for hook in self.hooks:
            hook(command)
        stdout = next((out for pattern, out in self.outputs.items() if pattern in command), "")
        return subprocess.CompletedProcess(command, 0, stdout, "")

    def matching(self, pattern: str) -> list[str]:
        return [command for command in self.commands if pattern in command]

    def index(self, pattern: str) -> int:
        """Position of the first recorded command containing pattern."""
        for i, command in enumerate(self.commands):
            if pattern in command:
                return i
        raise AssertionError(f"No command contains {pattern!r}: {self.commands}")


@pytest.fixture(autouse=True)
def _isolated_state(monkeypatch):
    for name in _ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SOURCE_DATE_EPOCH", str(SOURCE_DATE_EPOCH))
    # register_in_env prepends to PATH, restore it after each test
    monkeypatch.setenv("PATH", os.environ.get("PATH", ""))
    common.setup_logging()
    yield
    common.command_dry_run.set(False)


@pytest.fixture
def project(tmp_path) -> Path:
    """A project root containing build.json."""
    (tmp_path / "build.json").write_text(json.dumps(BUILD_JSON, indent=2))
    return tmp_path


@pytest.fixture
def config_file(project) -> str:
    return str(project / "build.json")


@pytest.fixture
def config(config_file) -> build_config.build_configure:
    return build_config.build_configure(config_file, jobs=4)


@pytest.fixture
def recorder(monkeypatch) -> CommandRecorder:
    recorder = CommandRecorder()
    recorder.outputs["gcc -dumpmachine"] = "x86_64-linux-gnu\n"
    monkeypatch.setattr(common, "run_command", recorder)
    return recorder


@pytest.fixture
def dry_run():
    common.command_dry_run.set(True)
    yield
    common.command_dry_run.set(False)


@pytest.fixture
def packages(config) -> dict[str, str]:
    """Fake tarballs for every configured package."""
    os.makedirs(config.packages_dir, exist_ok=True)
    paths = {}
    for name, package in config.package_list.items():
        path = package.get_path(config.packages_dir)
        with open(path, "wb") as file:
            file.write(f"{name} tarball".encode())
        paths[name] = path
    return paths
