#!/usr/bin/env python3
"""
PdLinuXOS Package Publisher

Builds the PKGBUILD in the current directory with makepkg, copies the resulting
packages into a local binary repository, rebuilds the repository database over
every package in that directory and optionally commits and pushes the
repository with git (SSH keys or a personal access token).

The database is always rebuilt from scratch, never updated incrementally.
"""

import argparse
import os
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Mapping, Optional, Sequence
from urllib.parse import quote, urlsplit, urlunsplit

import yaml


# Defaults (override with a config file or command-line flags)
REPO_NAME = "pdlx"
LOCAL_REPO_DIR = "/home/ali/pdlx/x86_64"
REMOTE_GIT_URL = "https://github.com/PersianBSD/pdlx.git"
GIT_BRANCH = "main"
MAKEPKG_FLAGS = ("-s", "--noconfirm")
DB_EXT = "xz"

USE_GITHUB_PAT = True
GITHUB_USER = "persianbsd"
GITHUB_TOKEN_ENV = "GITHUB_TOKEN"
GITHUB_TOKEN_FILE = "~/.config/pdlx/github_token"

CONFIG_FILE = "~/.config/pdlx/publish.yaml"

RECIPE_FILE = "PKGBUILD"
PKG_GLOB = "*.pkg.tar.*"
DB_EXTENSIONS = ("gz", "bz2", "xz", "zst", "lz4", "lrz", "Z")

# Recipes with archive sources get their checksums refreshed before building
ARCHIVE_SOURCE_RE = re.compile(
    r"source=.*\.(tar\.(gz|xz|bz2|zst|lz|lz4|lzma)|7z|zip)"
)

CONFIG_KEYS = {
    "repo_name", "repo_dir", "remote", "branch", "makepkg_flags", "db_ext",
    "sign", "push", "auth", "token_user", "token_env", "token_file",
}
STRING_KEYS = {
    "repo_name", "repo_dir", "remote", "branch", "token_user", "token_env",
    "token_file",
}
BOOL_KEYS = {"sign", "push"}


class PublishError(RuntimeError):
    """A fatal pipeline error; the run stops at the failing step."""


class ConfigError(PublishError):
    pass


class PreflightError(PublishError):
    pass


class BuildError(PublishError):
    pass


class RepoIndexError(PublishError):
    pass


class AuthError(PublishError):
    pass


class PushError(PublishError):
    pass


@dataclass(frozen=True)
class PublishConfig:
    """Fully resolved settings for one run."""
    repo_name: str = REPO_NAME
    repo_dir: Path = Path(LOCAL_REPO_DIR)
    remote_url: str = REMOTE_GIT_URL
    branch: str = GIT_BRANCH
    makepkg_flags: tuple[str, ...] = MAKEPKG_FLAGS
    db_ext: str = DB_EXT
    run_updpkgsums: bool = True
    install: bool = False
    push: bool = False
    clean: bool = False
    sign: bool = False
    quiet: bool = False
    use_token: bool = USE_GITHUB_PAT
    token_user: str = GITHUB_USER
    token_env: str = GITHUB_TOKEN_ENV
    token_file: Path = Path(GITHUB_TOKEN_FILE).expanduser()
    index_only: bool = False

    @property
    def db_name(self) -> str:
        return f"{self.repo_name}.db.tar.{self.db_ext}"

    @property
    def builder_flags(self) -> list[str]:
        flags = list(self.makepkg_flags)
        if self.quiet:
            flags.append("--quiet")
        return flags


@dataclass
class CommandResult:
    """Exit status (and captured stdout) of an external command."""
    returncode: int
    stdout: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs external tools with subprocess."""

    def run(
        self,
        cmd: Sequence[str],
        cwd: Optional[Path] = None,
        capture: bool = False,
    ) -> CommandResult:
        try:
            if capture:
                result = subprocess.run(
                    list(cmd), cwd=cwd, capture_output=True, text=True
                )
                return CommandResult(result.returncode, result.stdout.strip())
            result = subprocess.run(list(cmd), cwd=cwd)
            return CommandResult(result.returncode)
        except OSError:
            return CommandResult(127)

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)


def info(message: str) -> None:
    print(f"==> {message}", flush=True)


def error(message: str) -> None:
    print(f"ERROR: {message}", file=sys.stderr, flush=True)


def load_config_file(path: Path, required: bool = False) -> dict:
    """Load publisher settings from a YAML file.

    Returns an empty dict when the file is missing and not required.
    """
    if not path.exists():
        if required:
            raise ConfigError(f"Config file not found: {path}")
        return {}

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    unknown = sorted(str(key) for key in set(data) - CONFIG_KEYS)
    if unknown:
        raise ConfigError(f"Unknown key(s) in {path}: {', '.join(unknown)}")

    auth = data.get("auth")
    if auth is not None and auth not in ("token", "ssh"):
        raise ConfigError(f"auth must be 'token' or 'ssh', got: {auth}")

    db_ext = data.get("db_ext")
    if db_ext is not None and db_ext not in DB_EXTENSIONS:
        raise ConfigError(
            f"db_ext must be one of {', '.join(DB_EXTENSIONS)}, got: {db_ext}"
        )

    for key in STRING_KEYS & set(data):
        value = data[key]
        # An empty remote means "use the existing origin"
        if not isinstance(value, str) or (not value and key != "remote"):
            raise ConfigError(f"{key} must be a non-empty string in {path}")

    for key in BOOL_KEYS & set(data):
        if not isinstance(data[key], bool):
            raise ConfigError(f"{key} must be true or false in {path}")

    flags = data.get("makepkg_flags")
    if flags is not None and not isinstance(flags, list):
        raise ConfigError("makepkg_flags must be a list")
    if flags and not all(isinstance(flag, str) and flag for flag in flags):
        raise ConfigError("makepkg_flags must contain only non-empty strings")

    return data


def non_empty(value: str) -> str:
    if not value:
        raise argparse.ArgumentTypeError("must not be empty")
    return value


def non_empty_path(value: str) -> Path:
    return Path(non_empty(value))


def build_parser() -> argparse.ArgumentParser:
    """Command-line parser; help text shows the built-in defaults.

    Flags that are not given stay None so config file values can fill them in.
    """
    defaults = PublishConfig()
    parser = argparse.ArgumentParser(
        prog="pdlx-publish",
        description="Build the PKGBUILD in the current directory and publish "
                    "it to a pacman binary repository",
        allow_abbrev=False,
    )
    parser.add_argument(
        "--config",
        type=Path,
        help=f"YAML config file (default: {CONFIG_FILE} if present)",
    )
    parser.add_argument(
        "--no-updpkgsums",
        dest="run_updpkgsums",
        action="store_false",
        help="Do not run updpkgsums before build",
    )
    parser.add_argument(
        "--install",
        action="store_true",
        help="Install built packages locally (pacman -U)",
    )
    parser.add_argument(
        "--repo",
        dest="repo_dir",
        type=non_empty_path,
        metavar="DIR",
        help=f"Local binary repo dir (default: {defaults.repo_dir})",
    )
    parser.add_argument(
        "--repo-name",
        type=non_empty,
        metavar="NAME",
        help=f"Repo db name (default: {defaults.repo_name})",
    )
    parser.add_argument(
        "--push",
        action="store_true",
        help="Git commit+push the repo dir to its remote",
    )
    parser.add_argument(
        "--remote",
        dest="remote_url",
        metavar="URL",
        help="Remote Git URL (override)",
    )
    parser.add_argument(
        "--branch",
        type=non_empty,
        metavar="NAME",
        help=f"Git branch to push (default: {defaults.branch})",
    )
    parser.add_argument(
        "--clean",
        action="store_true",
        help="Clean src/pkg/old artifacts before build",
    )
    parser.add_argument(
        "--sign",
        action="store_true",
        help="Sign repo db with GPG (repo-add -s)",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Pass --quiet to makepkg",
    )
    parser.add_argument(
        "--ssh",
        dest="use_token",
        action="store_false",
        help="Push with SSH keys instead of an access token",
    )
    parser.add_argument(
        "--token",
        dest="use_token",
        action="store_true",
        help="Push with an access token injected into the https remote",
    )
    parser.add_argument(
        "--index-only",
        action="store_true",
        help="Skip the build and only rebuild the repo database",
    )
    parser.set_defaults(
        run_updpkgsums=None,
        install=None,
        push=None,
        clean=None,
        sign=None,
        quiet=None,
        use_token=None,
        index_only=None,
    )
    return parser


def defaults_from_file(data: dict) -> PublishConfig:
    """Built-in defaults overlaid with config file values."""
    base = PublishConfig()
    return PublishConfig(
        repo_name=data.get("repo_name", base.repo_name),
        repo_dir=Path(data.get("repo_dir", base.repo_dir)).expanduser(),
        remote_url=data.get("remote", base.remote_url) or "",
        branch=data.get("branch", base.branch),
        makepkg_flags=tuple(data.get("makepkg_flags", base.makepkg_flags)),
        db_ext=data.get("db_ext", base.db_ext),
        sign=bool(data.get("sign", base.sign)),
        push=bool(data.get("push", base.push)),
        use_token=data.get("auth", "token" if base.use_token else "ssh") == "token",
        token_user=data.get("token_user", base.token_user),
        token_env=data.get("token_env", base.token_env),
        token_file=Path(data.get("token_file", base.token_file)).expanduser(),
    )


def resolve_config(argv: Optional[Sequence[str]] = None) -> PublishConfig:
    """Merge built-in defaults, the config file and command-line flags."""
    args = build_parser().parse_args(argv)

    if args.config is not None:
        data = load_config_file(args.config.expanduser(), required=True)
    else:
        data = load_config_file(Path(CONFIG_FILE).expanduser())
    defaults = defaults_from_file(data)

    def pick(name: str):
        value = getattr(args, name)
        return getattr(defaults, name) if value is None else value

    return PublishConfig(
        repo_name=pick("repo_name"),
        repo_dir=pick("repo_dir").expanduser(),
        remote_url=pick("remote_url"),
        branch=pick("branch"),
        makepkg_flags=defaults.makepkg_flags,
        db_ext=defaults.db_ext,
        run_updpkgsums=pick("run_updpkgsums"),
        install=pick("install"),
        push=pick("push"),
        clean=pick("clean"),
        sign=pick("sign"),
        quiet=pick("quiet"),
        use_token=pick("use_token"),
        token_user=defaults.token_user,
        token_env=defaults.token_env,
        token_file=defaults.token_file,
        index_only=pick("index_only"),
    )


def required_tools(config: PublishConfig) -> list[tuple[str, str]]:
    """Executables the run needs, with the message used when one is missing."""
    tools = []
    if not config.index_only:
        tools.append(("makepkg", "makepkg not found"))
    tools.append(("repo-add", "repo-add not found (pacman -S pacman-contrib)"))
    if not config.index_only:
        tools.append(("tar", "tar not found"))
        if config.install:
            tools.append(("sudo", "sudo not found (needed for --install)"))
            tools.append(("pacman", "pacman not found (needed for --install)"))
    if config.push:
        tools.append(("git", "git not found (needed for --push)"))
    return tools


def preflight(config: PublishConfig, runner: CommandRunner, workdir: Path) -> None:
    """Fail before doing any work if the whole pipeline cannot run."""
    for name, message in required_tools(config):
        if not runner.which(name):
            raise PreflightError(message)

    if not config.index_only and not (workdir / RECIPE_FILE).is_file():
        raise PreflightError(f"No {RECIPE_FILE} in current dir")


def find_packages(directory: Path) -> list[Path]:
    """Package archives in a directory, sorted by name (signatures excluded)."""
    return sorted(
        p for p in directory.glob(PKG_GLOB)
        if p.is_file() and not p.name.endswith(".sig")
    )


def clean_workspace(workdir: Path) -> None:
    """Remove makepkg output from a previous build."""
    info("Cleaning old artifacts...")
    try:
        for name in ("pkg", "src"):
            if (workdir / name).is_dir():
                shutil.rmtree(workdir / name)
        for pattern in (PKG_GLOB, "*.log"):
            for path in workdir.glob(pattern):
                if path.is_file() or path.is_symlink():
                    path.unlink()
    except OSError as e:
        raise BuildError(f"Cannot clean {e.filename}: {e.strerror}") from e


def needs_checksum_refresh(recipe: Path) -> bool:
    try:
        content = recipe.read_text(errors="replace")
    except OSError as e:
        raise BuildError(f"Cannot read {recipe}: {e.strerror}") from e
    return any(ARCHIVE_SOURCE_RE.search(line) for line in content.splitlines())


def refresh_checksums(runner: CommandRunner, workdir: Path) -> None:
    """Run updpkgsums when the recipe references archive sources."""
    if not needs_checksum_refresh(workdir / RECIPE_FILE):
        return

    if not runner.which("updpkgsums"):
        info("updpkgsums not installed; skipping")
        return

    info("Updating sha256sums...")
    if not runner.run(["updpkgsums"], cwd=workdir).ok:
        raise BuildError("updpkgsums failed")


def build_packages(
    config: PublishConfig,
    runner: CommandRunner,
    workdir: Path,
) -> list[Path]:
    """Run makepkg and return the package archives it produced."""
    flags = config.builder_flags
    info(f"Building with: makepkg {' '.join(flags)}")
    result = runner.run(["makepkg", *flags], cwd=workdir)
    if not result.ok:
        raise BuildError(f"makepkg failed with exit code {result.returncode}")

    built = find_packages(workdir)
    if not built:
        raise BuildError("No built packages found")

    info("Built:")
    for pkg in built:
        print(f" - {pkg.name}")
    return built


def install_packages(runner: CommandRunner, packages: list[Path], workdir: Path) -> None:
    info("Installing locally...")
    cmd = ["sudo", "pacman", "-U", "--noconfirm"] + [str(p) for p in packages]
    result = runner.run(cmd, cwd=workdir)
    if not result.ok:
        raise BuildError(f"pacman -U failed with exit code {result.returncode}")


def copy_to_repo(packages: list[Path], repo_dir: Path) -> list[Path]:
    """Copy packages (and detached signatures) into the repo dir.

    Same-named files are overwritten; nothing else in the directory is touched.
    """
    try:
        repo_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise RepoIndexError(f"Cannot create repo dir {repo_dir}: {e.strerror}") from e
    info(f"Copying packages to {repo_dir}")

    copied = []
    for pkg in packages:
        target = repo_dir / pkg.name
        try:
            if target.exists() and target.samefile(pkg):
                copied.append(target)
                continue
            copied.append(Path(shutil.copy2(pkg, target)))
            sig = pkg.with_name(pkg.name + ".sig")
            if sig.is_file():
                shutil.copy2(sig, repo_dir / sig.name)
        except OSError as e:
            raise RepoIndexError(f"Cannot copy {pkg.name} to {repo_dir}: {e.strerror}") from e
    return copied


def remove_index(repo_dir: Path, repo_name: str) -> list[Path]:
    """Delete existing database and files artifacts of a repo."""
    removed = []
    for pattern in (f"{repo_name}.db*", f"{repo_name}.files*"):
        for path in repo_dir.glob(pattern):
            if path.is_file() or path.is_symlink():
                try:
                    path.unlink()
                except OSError as e:
                    raise RepoIndexError(f"Cannot remove {path}: {e.strerror}") from e
                removed.append(path)
    return removed


def run_repo_add(
    runner: CommandRunner,
    repo_dir: Path,
    db_name: str,
    packages: list[Path],
    sign: bool = False,
) -> None:
    """Run repo-add inside the repo dir over the given packages."""
    cmd = ["repo-add"]
    if sign:
        cmd.append("-s")
    cmd.append(db_name)
    cmd.extend(p.name for p in packages)

    result = runner.run(cmd, cwd=repo_dir)
    if not result.ok:
        raise RepoIndexError(f"repo-add failed with exit code {result.returncode}")


def rebuild_index(config: PublishConfig, runner: CommandRunner) -> list[Path]:
    """Rebuild the repo database from scratch over every package present."""
    repo_dir = config.repo_dir
    all_packages = find_packages(repo_dir) if repo_dir.is_dir() else []
    if not all_packages:
        raise RepoIndexError(f"No packages in repo dir to index: {repo_dir}")

    info(f"Rebuilding repo database from scratch: {config.db_name}")
    # Stale entries for removed packages must not survive
    remove_index(repo_dir, config.repo_name)
    run_repo_add(runner, repo_dir, config.db_name, all_packages, sign=config.sign)
    info(f"Indexed {len(all_packages)} package(s)")
    return all_packages


def resolve_token(
    environ: Mapping[str, str],
    token_env: str,
    token_file: Path,
) -> str:
    """Access token: environment variable first, then the token file."""
    token = environ.get(token_env, "")
    if token:
        return token

    if token_file.is_file():
        try:
            token = token_file.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as e:
            raise AuthError(f"Cannot read token file {token_file}: {e}") from e
        if not token:
            raise AuthError(f"Token file is empty: {token_file}")
        return token

    raise AuthError(
        f"Token auth enabled but no {token_env} env or token file at {token_file}"
    )


def inject_credentials(remote_url: str, user: str, token: str) -> str:
    """Return the https remote with user and token embedded."""
    parts = urlsplit(remote_url)
    if parts.scheme != "https" or not parts.hostname:
        raise AuthError(f"Token injection requires https remote; got: {redact_url(remote_url)}")

    host = parts.netloc.rsplit("@", 1)[-1]
    userinfo = f"{quote(user, safe='')}:{quote(token, safe='')}"
    return urlunsplit(parts._replace(netloc=f"{userinfo}@{host}"))


def redact_url(url: str) -> str:
    """Hide the password part of a URL for display."""
    parts = urlsplit(url)
    if parts.password is None:
        return url
    host = parts.netloc.rsplit("@", 1)[-1]
    return urlunsplit(parts._replace(netloc=f"{parts.username}:***@{host}"))


def git(runner: CommandRunner, repo_dir: Path, *args: str, capture: bool = False) -> CommandResult:
    return runner.run(["git", *args], cwd=repo_dir, capture=capture)


def git_checked(runner: CommandRunner, repo_dir: Path, *args: str) -> CommandResult:
    result = git(runner, repo_dir, *args)
    if not result.ok:
        raise PushError(f"git {args[0]} failed with exit code {result.returncode}")
    return result


def origin_url(runner: CommandRunner, repo_dir: Path) -> Optional[str]:
    """Current origin URL, or None if there is no origin."""
    if not (repo_dir / ".git").exists():
        return None
    result = git(runner, repo_dir, "remote", "get-url", "origin", capture=True)
    if not result.ok or not result.stdout:
        return None
    return result.stdout


def commit_message(repo_name: str, now: Optional[datetime] = None) -> str:
    stamp = (now or datetime.now().astimezone()).isoformat(timespec="seconds")
    return f"repo({repo_name}): rebuild db and add packages ({stamp})"


def publish(
    config: PublishConfig,
    runner: CommandRunner,
    environ: Mapping[str, str],
) -> None:
    """Commit the repo dir and push it to origin."""
    repo_dir = config.repo_dir
    info("Git commit+push...")

    remote = config.remote_url
    if config.use_token:
        # Resolve everything before touching git so a failure leaves no commit
        token = resolve_token(environ, config.token_env, config.token_file)
        remote = remote or origin_url(runner, repo_dir) or ""
        if not remote:
            raise PushError("No remote URL; set --remote or configure origin")
        remote = inject_credentials(remote, config.token_user, token)

    # Without a remote nothing can be pushed, so do not commit either
    if not remote and origin_url(runner, repo_dir) is None:
        raise PushError(
            "No 'origin' remote set. Set --remote (or 'remote' in the config "
            "file) or add a remote manually and re-run with --push."
        )

    if not (repo_dir / ".git").is_dir():
        git_checked(runner, repo_dir, "init")
        if not git(runner, repo_dir, "checkout", "-b", config.branch).ok:
            info(f"Could not create branch {config.branch}; renaming after commit")

    if remote:
        current = origin_url(runner, repo_dir)
        if current is None:
            info(f"Adding origin {redact_url(remote)}")
            git_checked(runner, repo_dir, "remote", "add", "origin", remote)
        elif current != remote:
            info(f"Setting origin to {redact_url(remote)}")
            git_checked(runner, repo_dir, "remote", "set-url", "origin", remote)

    git_checked(runner, repo_dir, "add", "-A")
    status = git(runner, repo_dir, "status", "--porcelain", capture=True)
    if not status.ok:
        raise PushError(f"git status failed with exit code {status.returncode}")
    if status.stdout:
        git_checked(runner, repo_dir, "commit", "-m", commit_message(config.repo_name))
    else:
        info("Nothing to commit")

    git_checked(runner, repo_dir, "branch", "-M", config.branch)

    result = git(runner, repo_dir, "push", "-u", "origin", config.branch)
    if not result.ok:
        raise PushError(
            f"git push failed with exit code {result.returncode}; the local "
            "commit is kept, re-run with --push to retry"
        )


def run_pipeline(
    config: PublishConfig,
    runner: CommandRunner,
    workdir: Path,
    environ: Mapping[str, str],
) -> None:
    preflight(config, runner, workdir)

    if not config.index_only:
        if config.clean:
            clean_workspace(workdir)
        if config.run_updpkgsums:
            refresh_checksums(runner, workdir)

        built = build_packages(config, runner, workdir)
        if config.install:
            install_packages(runner, built, workdir)
        copy_to_repo(built, config.repo_dir)

    rebuild_index(config, runner)

    if config.push:
        publish(config, runner, environ)

    info("Done.")


def main(
    argv: Optional[Sequence[str]] = None,
    runner: Optional[CommandRunner] = None,
    workdir: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> int:
    try:
        config = resolve_config(argv)
        run_pipeline(
            config,
            runner or CommandRunner(),
            workdir or Path.cwd(),
            os.environ if environ is None else environ,
        )
    except PublishError as e:
        error(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
