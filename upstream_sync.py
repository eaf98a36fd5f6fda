#!/usr/bin/env python3
"""Sync a fork with its upstream repository and open a pull request.

Runs inside the ``sync-repo`` GitHub Actions workflow from a checkout of the
fork's base branch.  When the upstream base branch differs from the fork's,
a ``sync-upstream-<epoch>`` branch is created, upstream is merged into it,
the branch is pushed and a pull request is opened with the ``gh`` CLI.

Each stage is a step of a :class:`devenv_sequencer.Sequencer` with the abort
policy, so the first failure ends the job with a nonzero exit status.
"""
from __future__ import annotations

import argparse
import dataclasses
import logging
import pathlib
import sys
import time
from typing import Any, Callable, Dict, Iterable, Optional

from devenv_sequencer import (
    CommandRunner,
    ExecutionContext,
    ExternalCommandFailed,
    FailurePolicy,
    PlatformProfile,
    PrerequisiteMissing,
    Sequencer,
    SequencerError,
    Step,
    log_success,
    time_left,
    wait_until,
)

LOG = logging.getLogger(__name__)

DEFAULT_UPSTREAM_URL = "https://github.com/ctson97/test1.git"
CI_PLATFORM = PlatformProfile(name="ci")


@dataclasses.dataclass(frozen=True)
class SyncOptions:
    upstream_url: str = DEFAULT_UPSTREAM_URL
    repo: str = ""
    base: str = "main"
    remote_name: str = "upstream"
    branch_prefix: str = "sync-upstream"
    timeout: float = 60
    poll_interval: float = 5
    check_timeout: float = 15
    title: Optional[str] = None
    body: Optional[str] = None

    @property
    def upstream_slug(self) -> str:
        slug = self.upstream_url.rstrip("/")
        if slug.endswith(".git"):
            slug = slug[: -len(".git")]
        for prefix in ("https://github.com/", "git@github.com:"):
            if slug.startswith(prefix):
                return slug[len(prefix):]
        return slug

    @property
    def pr_title(self) -> str:
        return self.title or f"Sync from {self.upstream_slug}"

    @property
    def pr_body(self) -> str:
        if self.body:
            return self.body
        return (
            "Automatically synchronised from the upstream repository "
            f"[{self.upstream_slug}](https://github.com/{self.upstream_slug})."
        )


def _options(ctx: ExecutionContext) -> SyncOptions:
    return ctx.config


def git(ctx: ExecutionContext, *args: str, check: bool = True):
    return ctx.runner.run(["git", *args], cwd=ctx.cwd, check=check)


def git_probe(ctx: ExecutionContext, *args: str):
    return ctx.runner.probe(["git", *args], cwd=ctx.cwd)


def _remote_url(ctx: ExecutionContext) -> Optional[str]:
    result = git_probe(ctx, "remote", "get-url", _options(ctx).remote_name)
    return result.stdout.strip() if result.ok else None


def _remote_configured(ctx: ExecutionContext) -> bool:
    return _remote_url(ctx) == _options(ctx).upstream_url


def _configure_remote(ctx: ExecutionContext) -> None:
    options = _options(ctx)
    if _remote_url(ctx) is None:
        git(ctx, "remote", "add", options.remote_name, options.upstream_url)
    else:
        git(ctx, "remote", "set-url", options.remote_name, options.upstream_url)
    log_success(LOG, "Remote %s points at %s", options.remote_name, options.upstream_url)


def _detect_changes(ctx: ExecutionContext) -> Dict[str, Any]:
    options = _options(ctx)
    try:
        git(ctx, "fetch", options.remote_name)
    except ExternalCommandFailed as exc:
        raise ExternalCommandFailed(
            exc.cmd, exc.returncode, exc.output, message=f"Failed to fetch {options.remote_name}: {exc}"
        ) from exc
    git(ctx, "checkout", options.base)
    git(ctx, "fetch", "origin", options.base)
    git(ctx, "fetch", options.remote_name, options.base)

    cmd = ["git", "diff", "--quiet", f"origin/{options.base}", f"{options.remote_name}/{options.base}"]
    result = ctx.runner.probe(cmd, cwd=ctx.cwd)
    if result.returncode == 0:
        log_success(LOG, "No changes from upstream. Skipping sync.")
        return {"has_changes": False}
    if result.returncode == 1:
        LOG.info("Changes detected from upstream. Proceeding with sync.")
        return {"has_changes": True}
    if ctx.dry_run:
        LOG.info(
            "[dry-run] Would detect changes between origin/%s and %s/%s",
            options.base,
            options.remote_name,
            options.base,
        )
        return {"has_changes": True}
    raise ExternalCommandFailed(cmd, result.returncode, result.output)


def _no_changes(ctx: ExecutionContext) -> bool:
    return ctx.get("has_changes") is False


def _until_done(key: str) -> Callable[[ExecutionContext], bool]:
    def predicate(ctx: ExecutionContext) -> bool:
        return _no_changes(ctx) or bool(ctx.get(key))

    return predicate


def branch_name(prefix: str, now: Optional[float] = None) -> str:
    return f"{prefix}-{int(now if now is not None else time.time())}"


def _create_branch(ctx: ExecutionContext) -> Dict[str, Any]:
    branch = branch_name(_options(ctx).branch_prefix)
    git(ctx, "checkout", "-b", branch)
    return {"branch": branch}


def _merge_upstream(ctx: ExecutionContext) -> Dict[str, Any]:
    options = _options(ctx)
    git(ctx, "merge", f"{options.remote_name}/{options.base}")
    return {"merged": True}


def _push_branch(ctx: ExecutionContext) -> Dict[str, Any]:
    git(ctx, "push", "origin", ctx.get("branch"))
    return {"pushed": True}


def _branch_on_remote(ctx: ExecutionContext, timeout: Optional[float] = None) -> bool:
    options = _options(ctx)
    cmd = ["gh", "api", f"repos/{options.repo}/branches/{ctx.get('branch')}"]
    return ctx.runner.probe(cmd, timeout=timeout or options.check_timeout).ok


def _await_branch(ctx: ExecutionContext) -> Dict[str, Any]:
    options = _options(ctx)
    if not options.repo:
        raise PrerequisiteMissing("--repo is required to look up the pushed branch")
    if not ctx.dry_run:
        deadline = time.monotonic() + options.timeout
        wait_until(
            lambda: _branch_on_remote(ctx, timeout=time_left(deadline, options.check_timeout)),
            timeout=options.timeout,
            interval=options.poll_interval,
            description=f"branch {ctx.get('branch')} on {options.repo}",
        )
    return {"branch_visible": True}


def _open_pull_request(ctx: ExecutionContext) -> Dict[str, Any]:
    options = _options(ctx)
    result = ctx.runner.run(
        [
            "gh",
            "pr",
            "create",
            "--repo",
            options.repo,
            "--title",
            options.pr_title,
            "--body",
            options.pr_body,
            "--head",
            ctx.get("branch"),
            "--base",
            options.base,
        ]
    )
    if result.stdout.strip():
        log_success(LOG, "Opened pull request %s", result.stdout.strip())
    return {"pull_request": result.stdout.strip() or True}


def build_catalog() -> Sequencer:
    abort = FailurePolicy.ABORT
    return Sequencer(
        [
            Step("upstream-remote", _configure_remote, _remote_configured, on_failure=abort,
                 description="Point the upstream remote at the upstream repository"),
            Step("detect-changes", _detect_changes, lambda ctx: "has_changes" in ctx,
                 depends_on=("upstream-remote",), on_failure=abort,
                 description="Fetch both remotes and compare the base branches"),
            Step("create-branch", _create_branch, _until_done("branch"),
                 depends_on=("detect-changes",), on_failure=abort,
                 description="Create the sync branch"),
            Step("merge-upstream", _merge_upstream, _until_done("merged"),
                 depends_on=("create-branch",), on_failure=abort,
                 description="Merge the upstream base branch"),
            Step("push-branch", _push_branch, _until_done("pushed"),
                 depends_on=("merge-upstream",), on_failure=abort,
                 description="Push the sync branch to origin"),
            Step("await-branch", _await_branch, _until_done("branch_visible"),
                 depends_on=("push-branch",), on_failure=abort,
                 description="Wait until the hosting platform reports the branch"),
            Step("open-pull-request", _open_pull_request, _until_done("pull_request"),
                 depends_on=("await-branch",), on_failure=abort,
                 description="Open a pull request against the base branch"),
        ]
    )


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--upstream-url", default=DEFAULT_UPSTREAM_URL, help="Upstream repository URL.")
    parser.add_argument("--repo", required=True, help="OWNER/NAME of the fork the pull request is opened on.")
    parser.add_argument("--base", default="main", help="Base branch to sync (default: main).")
    parser.add_argument("--remote-name", default="upstream", help="Name of the upstream remote.")
    parser.add_argument("--branch-prefix", default="sync-upstream", help="Prefix of the sync branch.")
    parser.add_argument(
        "--timeout",
        type=float,
        default=60,
        help="Seconds to wait for the pushed branch to become visible (default: 60).",
    )
    parser.add_argument("--title", help="Pull request title.")
    parser.add_argument("--body", help="Pull request body.")
    parser.add_argument("--dry-run", action="store_true", help="Only log the commands that would change state.")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase logging verbosity.")
    return parser.parse_args(argv)


def configure_logging(verbosity: int) -> None:
    level = logging.DEBUG if verbosity >= 1 else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s", force=True)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)
    options = SyncOptions(
        upstream_url=args.upstream_url,
        repo=args.repo,
        base=args.base,
        remote_name=args.remote_name,
        branch_prefix=args.branch_prefix,
        timeout=args.timeout,
        title=args.title,
        body=args.body,
    )
    ctx = ExecutionContext(
        CI_PLATFORM,
        runner=CommandRunner(dry_run=args.dry_run),
        config=options,
        cwd=pathlib.Path.cwd(),
    )
    try:
        report = build_catalog().run(ctx)
    except SequencerError as exc:
        LOG.error("%s", exc)
        return 2
    for line in report.summary_lines():
        LOG.info("%s", line)
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
