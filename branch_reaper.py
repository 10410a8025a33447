#!/usr/bin/env python3
"""Delete merged or non-merged remote branches older than a number of days.

The protected branch is never touched and the default mode is a dry run;
nothing is deleted unless ``--execute`` is given.
"""
import argparse
import os
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import NoReturn

from colorama import Fore, Style, just_fix_windows_console

just_fix_windows_console()

THREE_MONTHS = 91
DEFAULT_PROTECTED_BRANCH = "master"
DEFAULT_REMOTE = "origin"

DRY_RUN_BANNER = "================= DRY RUN {} ================="

EPILOG = """\
examples:
  [Dry run] delete merged branches older than 3 months
    %(prog)s <repo-dir>

  [Dry run] delete non-merged branches older than 3 months
    %(prog)s --no-merged <repo-dir>

  [Dry run] delete merged branches older than 5 months
    %(prog)s -d 152 <repo-dir>

  Delete merged branches older than 3 months
    %(prog)s <repo-dir> --execute

quick time values:
  one year = 365, eight months = 243, five months = 152,
  three months = 91, two months = 60, one month = 30
"""


@dataclass(frozen=True)
class Config:
    repo_dir: str
    days: int = THREE_MONTHS
    merged: bool = True
    dry_run: bool = True
    debug: bool = False
    protected_branch: str = DEFAULT_PROTECTED_BRANCH
    remote: str = DEFAULT_REMOTE
    exclude: tuple[str, ...] = ()


@dataclass(frozen=True)
class BranchCandidate:
    name: str
    last_commit_date: date
    age_days: int


@dataclass
class CleanupReport:
    deleted: list[str] = field(default_factory=list)
    would_delete: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


# --- terminal output ---

def print_color(message: str, color: str, file=None) -> None:
    print(f"{color}{Style.BRIGHT}{message}{Style.RESET_ALL}", file=file)


def print_action(message: str) -> None:
    print_color(f"[ACTION] {message}", Fore.BLUE)


def print_debug(message: str, debug: bool) -> None:
    if debug:
        print_color(f"[DEBUG]  {message}", Fore.YELLOW)


def print_error_and_usage(message: str) -> NoReturn:
    print_color(f"Error: {message}\n", Fore.RED, file=sys.stderr)
    print_color("Please specify -h for usage manual", Fore.CYAN)
    sys.exit(1)


def print_branch_stats(candidate: BranchCandidate, debug: bool = False) -> None:
    print_color(f"Selected branch: {candidate.name}", Fore.GREEN)
    print_debug(f"    --- Last commit date: {candidate.last_commit_date.isoformat()}", debug)
    print(
        f"    --- Last commit on branch was "
        f"{Fore.CYAN}{candidate.age_days}{Style.RESET_ALL} days ago"
    )


# --- git client ---

def run_git_command(args: list[str], repo_dir: str, capture: bool = True, debug: bool = False) -> list[str]:
    cmd = ["git", "-C", repo_dir] + args
    print_debug(f"Command: {' '.join(cmd)}", debug)
    result = subprocess.run(
        cmd,
        capture_output=capture,
        text=True,
        check=True
    )

    if capture:
        return result.stdout.strip().splitlines()
    return []


def is_work_tree(repo_dir: str, debug: bool = False) -> bool:
    try:
        output = run_git_command(["rev-parse", "--is-inside-work-tree"], repo_dir, debug=debug)
    except subprocess.CalledProcessError:
        return False
    return output[:1] == ["true"]


def fetch_prune(repo_dir: str, remote: str, debug: bool = False) -> None:
    run_git_command(["fetch", "--prune", remote], repo_dir, capture=False, debug=debug)


def list_remote_branches(
    repo_dir: str,
    remote: str,
    protected_branch: str,
    merged: bool = True,
    exclude: tuple[str, ...] = (),
    debug: bool = False,
) -> list[str]:
    """Remote branch short names merged (or not) into the protected branch.

    Symbolic refs such as ``origin/HEAD``, the protected branch itself and any
    excluded name are left out.
    """
    args = [
        "branch", "-r",
        "--merged" if merged else "--no-merged", f"{remote}/{protected_branch}",
        "--format", "%(refname:short)",
    ]
    prefix = f"{remote}/"
    keep_out = {"HEAD", protected_branch, *exclude}

    branches = []
    for ref in run_git_command(args, repo_dir, debug=debug):
        ref = ref.strip()
        if not ref.startswith(prefix):
            continue
        name = ref[len(prefix):]
        if name and name not in keep_out:
            branches.append(name)
    return branches


def get_local_branches(repo_dir: str, debug: bool = False) -> list[str]:
    return run_git_command(["branch", "--format", "%(refname:short)"], repo_dir, debug=debug)


def remote_branch_exists(repo_dir: str, remote: str, branch: str, debug: bool = False) -> bool:
    try:
        run_git_command(
            ["rev-parse", "--verify", "--quiet", f"refs/remotes/{remote}/{branch}"], repo_dir, debug=debug
        )
    except subprocess.CalledProcessError:
        return False
    return True


def get_last_commit_date(repo_dir: str, remote: str, branch: str, debug: bool = False) -> date:
    # %ci looks like "2016-09-23 14:40:54 +0200"; only the day is kept.
    output = run_git_command(["show", "-s", "--format=%ci", f"{remote}/{branch}"], repo_dir, debug=debug)
    tokens = output[0].split() if output else []
    if not tokens:
        raise ValueError(f"No commit date found for {remote}/{branch}")
    return datetime.strptime(tokens[0], "%Y-%m-%d").date()


def checkout(repo_dir: str, branch: str, debug: bool = False) -> None:
    run_git_command(["checkout", branch], repo_dir, capture=False, debug=debug)


def delete_local_branch(repo_dir: str, branch: str, debug: bool = False) -> None:
    run_git_command(["branch", "-D", branch], repo_dir, capture=False, debug=debug)


def delete_remote_branch(repo_dir: str, remote: str, branch: str, debug: bool = False) -> None:
    run_git_command(["push", "--delete", remote, branch], repo_dir, capture=False, debug=debug)


# --- cleanup ---

def age_in_days(last_commit_date: date, today: date) -> int:
    return (today - last_commit_date).days


def evaluate_branch(config: Config, branch: str, today: date) -> BranchCandidate:
    last_commit_date = get_last_commit_date(config.repo_dir, config.remote, branch, debug=config.debug)
    return BranchCandidate(branch, last_commit_date, age_in_days(last_commit_date, today))


def is_stale(candidate: BranchCandidate, days: int) -> bool:
    return candidate.age_days > days


def delete_branch(config: Config, branch: str, local_branches: list[str], report: CleanupReport) -> None:
    if config.dry_run:
        print_color("    --- Will delete the branch\n", Fore.RED)
        report.would_delete.append(branch)
        return

    print_color("    --- Deleting branch locally and on remote\n", Fore.RED)
    try:
        if branch in local_branches:
            delete_local_branch(config.repo_dir, branch, debug=config.debug)
        else:
            print_debug(f"No local branch '{branch}', skipping local delete", config.debug)
        delete_remote_branch(config.repo_dir, config.remote, branch, debug=config.debug)
    except subprocess.CalledProcessError as e:
        message = (e.stderr or "").strip() or f"exit status {e.returncode}"
        print_color(f"❌ Could not delete branch '{branch}': {message}", Fore.RED, file=sys.stderr)
        report.failed.append((branch, message))
    else:
        print_color(f"✅ Deleted branch: {branch}", Fore.GREEN)
        report.deleted.append(branch)


def delete_old_branches(config: Config, today: date | None = None) -> CleanupReport:
    """Run one cleanup pass over the remote branches of ``config.repo_dir``.

    Fetch, list, checkout and commit date lookups propagate
    ``subprocess.CalledProcessError``; a missing protected branch on the remote
    raises ``LookupError``. A failed deletion is recorded in the returned report
    and the remaining branches are still processed.
    """
    today = today or date.today()
    report = CleanupReport()

    if config.dry_run:
        print_color(DRY_RUN_BANNER.format("STARTED"), Fore.BLUE)

    print_action("Pruning local cache of remote branches...")
    fetch_prune(config.repo_dir, config.remote, debug=config.debug)

    if not remote_branch_exists(config.repo_dir, config.remote, config.protected_branch, debug=config.debug):
        raise LookupError(
            f"Protected branch {config.remote}/{config.protected_branch} not found, "
            "set it with --protected-branch"
        )

    print_action("Retrieving the list of branches...")
    branches = list_remote_branches(
        config.repo_dir,
        config.remote,
        config.protected_branch,
        merged=config.merged,
        exclude=config.exclude,
        debug=config.debug,
    )
    kind = "merged" if config.merged else "non merged"
    print_action(f"Deleting {kind} branches older than {config.days} days...\n")

    if branches:
        local_branches: list[str] = []
        if config.dry_run:
            print_debug(f"Dry run, not checking out {config.protected_branch}", config.debug)
        else:
            # A branch that is checked out cannot be deleted.
            checkout(config.repo_dir, config.protected_branch, debug=config.debug)
            local_branches = get_local_branches(config.repo_dir, debug=config.debug)

        for branch in branches:
            candidate = evaluate_branch(config, branch, today)
            if not is_stale(candidate, config.days):
                print_debug(f"Keeping {branch}, last commit {candidate.age_days} days ago", config.debug)
                continue
            print_branch_stats(candidate, debug=config.debug)
            delete_branch(config, branch, local_branches, report)

        print_action("Pruning local cache of remote branches...")
        fetch_prune(config.repo_dir, config.remote, debug=config.debug)
    else:
        print_color("🎉 Found no branches to delete\n", Fore.GREEN)

    print_action("Finished.")
    if config.dry_run:
        print_color(DRY_RUN_BANNER.format("FINISHED"), Fore.BLUE)
    return report


# --- command line ---

class ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        # argparse reports e.g. "argument -d/--days: expected one argument"
        match = re.match(r"argument ([^:]+): (.*)", message)
        if match is None:
            print_error_and_usage(f"Invalid option: {message}")
        if "--days" in match.group(1).split("/"):
            print_error_and_usage("The number of days is invalid.")
        print_error_and_usage(f"Invalid option {match.group(1)}: {match.group(2)}")


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        description=(
            "Delete merged or non-merged branches older than a number of days "
            "from the remote of a git repository. The protected branch is always "
            "excluded and the default is a dry run."
        ),
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
    )
    parser.add_argument("repo", nargs="?", help="Path to the git repository")
    parser.add_argument(
        "-d", "--days",
        default=str(THREE_MONTHS),
        help=f"Age threshold in days [default: {THREE_MONTHS}]"
    )
    parser.add_argument(
        "-m", "--merged",
        dest="merged",
        action="store_const",
        const=True,
        default=True,
        help="Delete merged branches [default]"
    )
    parser.add_argument(
        "-n", "--no-merged",
        dest="merged",
        action="store_const",
        const=False,
        help="Delete non-merged branches"
    )
    parser.add_argument(
        "-e", "--execute",
        action="store_true",
        help="Really delete the branches instead of a dry run"
    )
    parser.add_argument(
        "-p", "--protected-branch",
        default=DEFAULT_PROTECTED_BRANCH,
        help=f"Branch that is never deleted [default: {DEFAULT_PROTECTED_BRANCH}]"
    )
    parser.add_argument(
        "-r", "--remote",
        default=DEFAULT_REMOTE,
        help=f"Remote to clean up [default: {DEFAULT_REMOTE}]"
    )
    parser.add_argument(
        "-x", "--exclude",
        action="append",
        default=[],
        metavar="BRANCH",
        help="Additional branch to keep, can be repeated"
    )
    parser.add_argument("--debug", action="store_true", help="Show debug messages")
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_parser()
    args, unknown = parser.parse_known_args(argv)
    for token in unknown:
        if token.startswith("-"):
            print_error_and_usage(f"Invalid option {token}")
    if unknown:
        print_error_and_usage("Parameter <repo-dir> specified more than once.")
    return args


def parse_days(value: str) -> int:
    if not (value.isascii() and value.isdigit()):
        print_error_and_usage("The number of days is invalid.")
    days = int(value)
    if days <= 0:
        print_error_and_usage("The number of days is invalid.")
    return days


def resolve_config(argv: list[str] | None = None) -> Config:
    """Build the run configuration, exiting with status 1 on any invalid input.

    Checks run in a fixed order: repository directory, days, git binary,
    work tree. No git command runs before the first two pass.
    """
    args = parse_args(argv)

    if not args.repo or not os.path.isdir(args.repo):
        print_error_and_usage("Parameter <repo-dir> invalid or not specified.")
    days = parse_days(args.days)

    config = Config(
        repo_dir=args.repo,
        days=days,
        merged=args.merged,
        dry_run=not args.execute,
        debug=args.debug,
        protected_branch=args.protected_branch,
        remote=args.remote,
        exclude=tuple(args.exclude),
    )
    print_debug(f"Setting up with {config}", config.debug)

    print_debug("Checking if git is installed correctly", config.debug)
    if shutil.which("git") is None:
        print_error_and_usage("git is not installed.")

    print_debug(f"Checking if {config.repo_dir} is a valid git repo", config.debug)
    if not is_work_tree(config.repo_dir, debug=config.debug):
        print_error_and_usage("The specified path is not a valid git repository.")

    return config


def main(argv: list[str] | None = None) -> None:
    config = resolve_config(argv)

    try:
        report = delete_old_branches(config)
    except (subprocess.CalledProcessError, ValueError, LookupError) as e:
        print_color(f"❌ Cleanup aborted: {e}", Fore.RED, file=sys.stderr)
        sys.exit(1)

    if not report.ok:
        print_color(f"❌ {len(report.failed)} branch(es) could not be deleted:", Fore.RED, file=sys.stderr)
        for branch, message in report.failed:
            print(f"    --- {branch}: {message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
