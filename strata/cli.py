"""strata command line."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console

from .config import CredentialStore, Credentials, RemoteConfig, configure_logging
from .diff import DiffStats, FileChange
from .errors import (
    ConflictsRemainError,
    CorruptError,
    EmptyCommitError,
    NotFoundError,
    RepositoryNotFoundError,
    StrataError,
)
from .merge import MergeResult, MergeStrategy
from .repository import LogEntry, Repository

EXIT_FAILURE = 1
EXIT_SETUP = 3
EXIT_EMPTY_COMMIT = 4
EXIT_CONFLICTS = 5

app = typer.Typer(
    help="Content-addressed version control.",
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)
branch_app = typer.Typer(help="List, create, delete and rename branches.")
app.add_typer(branch_app, name="branch")

console = Console()
err_console = Console(stderr=True)

state = {"verbose": False}


@app.callback()
def _main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging and tracebacks")) -> None:
    state["verbose"] = verbose
    configure_logging(verbose)


@contextmanager
def errors() -> Iterator[None]:
    """Map library failures to exit codes."""
    try:
        yield
    except EmptyCommitError as e:
        err_console.print(f"[yellow]{e.message}[/yellow]")
        raise typer.Exit(EXIT_EMPTY_COMMIT)
    except ConflictsRemainError as e:
        err_console.print(f"[red]Conflicts remain in:[/red] {', '.join(e.paths) or e.message}")
        raise typer.Exit(EXIT_CONFLICTS)
    except (RepositoryNotFoundError, CorruptError) as e:
        err_console.print(f"[red]Error:[/red] {e.message}")
        if state["verbose"]:
            err_console.print_exception()
        raise typer.Exit(EXIT_SETUP)
    except StrataError as e:
        err_console.print(f"[red]Error:[/red] {e.message}")
        if state["verbose"]:
            err_console.print_exception()
        raise typer.Exit(EXIT_FAILURE)
    except OSError as e:
        err_console.print(f"[red]Error:[/red] {e}")
        if state["verbose"]:
            err_console.print_exception()
        raise typer.Exit(EXIT_FAILURE)
    except typer.Exit:
        raise
    except Exception as e:
        err_console.print(f"[red]Unexpected error:[/red] {e.__class__.__name__}: {e}", highlight=False)
        if state["verbose"]:
            err_console.print_exception()
        else:
            err_console.print("Run again with --verbose for the traceback.")
        raise typer.Exit(EXIT_FAILURE)


def _repo() -> Repository:
    return Repository.discover()


def _cwd_paths(paths: List[str]) -> List[Path]:
    return [Path(p).absolute() for p in paths]


def _report_merge(result: MergeResult) -> None:
    if result.strategy is MergeStrategy.UP_TO_DATE:
        console.print("Already up to date.")
    elif result.strategy is MergeStrategy.FAST_FORWARD:
        console.print(f"Fast-forward to {(result.remote_commit_id or '')[:8]}")
    elif result.strategy is MergeStrategy.THREE_WAY:
        console.print(f"Merge made: {(result.merge_commit_id or '')[:8]}")
        for path in result.auto_merged:
            console.print(f"  auto-merged {path}")
    else:
        for conflict in result.conflicts:
            console.print(f"[red]CONFLICT ({conflict.conflict_type.value})[/red]: {conflict.path}")
        console.print("Fix conflicts, then run `strata merge --continue` (or `--abort`).")
        raise typer.Exit(EXIT_CONFLICTS)


# -- Local commands --


@app.command()
def init(
    path: Path = typer.Argument(Path("."), help="Directory to initialise"),
    branch: str = typer.Option("main", "--branch", "-b", help="Name of the initial branch"),
) -> None:
    """Create an empty repository."""
    with errors():
        path.mkdir(parents=True, exist_ok=True)
        repo = Repository.init(path, default_branch=branch)
        console.print(f"Initialized empty repository in {repo.meta}")


@app.command()
def add(paths: List[str] = typer.Argument(..., help="Files or directories to stage")) -> None:
    """Stage file contents for the next commit."""
    with errors():
        changed = _repo().add(_cwd_paths(paths))
        for path in changed:
            console.print(f"staged {path}")


@app.command()
def commit(message: str = typer.Option(..., "--message", "-m", help="Commit message")) -> None:
    """Record the staged snapshot."""
    with errors():
        repo = _repo()
        created = repo.commit(message)
        branch = repo.current_branch() or "detached HEAD"
        console.print(f"[{branch} {created.short_id}] {message}", markup=False, highlight=False)


@app.command()
def status() -> None:
    """Show untracked, modified and deleted files."""
    with errors():
        repo = _repo()
        branch = repo.current_branch()
        console.print(f"On branch {branch}" if branch else f"HEAD detached at {(repo.current_head() or '')[:8]}")
        if repo.is_merge_in_progress():
            console.print("[yellow]Merge in progress[/yellow]")
        result = repo.status()
        if result.is_clean:
            console.print("Nothing to commit, working tree clean")
            return
        for label, paths, colour in (
            ("modified", result.modified, "yellow"),
            ("deleted", result.deleted, "red"),
            ("untracked", result.untracked, "green"),
        ):
            for path in paths:
                console.print(f"  [{colour}]{label}:[/{colour}] {path}")


def _print_changes(changes: List[FileChange], stat: bool, unified: bool = False) -> None:
    if stat:
        stats = DiffStats.from_changes(changes)
        for change in changes:
            console.print(f" {change.path} | +{change.lines_added} -{change.lines_deleted}")
        console.print(
            f" {stats.files_changed} file(s) changed, "
            f"{stats.lines_added} insertion(s)(+), {stats.lines_deleted} deletion(s)(-)"
        )
        return
    for change in changes:
        console.print(f"[bold]{change.change_type.value}: {change.path}[/bold]", highlight=False)
        if change.binary:
            console.print("  Binary files differ")
            continue
        if unified:
            for line in change.hunks:
                if line.startswith(("---", "+++")):
                    style = "bold"
                elif line.startswith("@@"):
                    style = "cyan"
                else:
                    style = {"+": "green", "-": "red"}.get(line[:1], "")
                console.print(line, style=style, highlight=False, markup=False)
            continue
        for line in change.patch.lines if change.patch else ():
            colour = "green" if line.startswith("+") else "red"
            console.print(line, style=colour, highlight=False, markup=False)


@app.command()
def diff(
    revisions: Optional[List[str]] = typer.Argument(None, help="Two revisions to compare"),
    staged: bool = typer.Option(False, "--staged", help="Compare HEAD with the index"),
    stat: bool = typer.Option(False, "--stat", help="Only show counts"),
    unified: Optional[int] = typer.Option(
        None, "--unified", "-U", min=0, help="Unified hunks with this many context lines"
    ),
) -> None:
    """Show changes: working tree vs index, HEAD vs index, or two commits."""
    with errors():
        repo = _repo()
        if revisions:
            if len(revisions) != 2:
                err_console.print("Give exactly two revisions")
                raise typer.Exit(EXIT_FAILURE)
            changes = repo.diff_commits(revisions[0], revisions[1], context=unified)
        elif staged:
            changes = repo.diff_staged(context=unified)
        else:
            changes = repo.diff_working(context=unified)
        _print_changes(changes, stat, unified is not None)


def format_log_entry(entry: LogEntry, fmt: str = "full") -> str:
    commit = entry.commit
    decoration = f" ({', '.join(entry.decorations)})" if entry.decorations else ""
    if fmt == "oneline":
        subject = commit.message.splitlines()[0] if commit.message else ""
        return f"{commit.short_id}{decoration} {subject}"
    lines = [f"commit {commit.id}{decoration}"]
    if fmt == "full":
        if commit.is_merge:
            lines.append(f"Merge: {(commit.parent_id or '')[:8]} {(commit.merge_parent_id or '')[:8]}")
        when = datetime.fromtimestamp(commit.timestamp / 1000, tz=timezone.utc)
        lines.append(f"Date:   {when.isoformat()}")
    lines.append("")
    lines.extend(f"    {line}" for line in commit.message.splitlines() or [""])
    lines.append("")
    return "\n".join(lines)


@app.command()
def log(
    limit: Optional[int] = typer.Option(None, "--limit", "-n", help="Show at most this many commits"),
    oneline: bool = typer.Option(False, "--oneline", help="One line per commit"),
    fmt: str = typer.Option("full", "--format", help="full, short or oneline"),
    path: Optional[str] = typer.Option(None, "--path", help="Only commits touching this path"),
) -> None:
    """Show commit history over both parents."""
    with errors():
        repo = _repo()
        rel = str(Path(path).absolute()) if path else None
        for entry in repo.log(limit=limit, path=rel):
            console.print(format_log_entry(entry, "oneline" if oneline else fmt), highlight=False, markup=False)


@branch_app.command("list")
def branch_list() -> None:
    """List branches; the current one is starred."""
    with errors():
        for info in _repo().list_branches():
            marker = "*" if info.current else " "
            console.print(f"{marker} {info.name} {info.commit_id[:8]}", highlight=False)


@branch_app.command("create")
def branch_create(
    name: str,
    start: Optional[str] = typer.Argument(None, help="Start commit or branch (default HEAD)"),
) -> None:
    with errors():
        info = _repo().create_branch(name, start)
        console.print(f"Created branch {info.name} at {info.commit_id[:8]}")


@branch_app.command("delete")
def branch_delete(name: str, force: bool = typer.Option(False, "--force", "-f")) -> None:
    with errors():
        was = _repo().delete_branch(name, force=force)
        console.print(f"Deleted branch {name} (was {was[:8]})")


@branch_app.command("rename")
def branch_rename(old: str, new: str) -> None:
    with errors():
        _repo().rename_branch(old, new)
        console.print(f"Renamed {old} to {new}")


@app.command()
def checkout(
    target: str = typer.Argument(..., help="Branch name or commit id"),
    force: bool = typer.Option(False, "--force", "-f", help="Discard local changes"),
) -> None:
    """Replace the working tree with a branch or commit."""
    with errors():
        repo = _repo()
        if repo.refs.get(target) is not None:
            repo.checkout_branch(target, force=force)
            console.print(f"Switched to branch '{target}'")
        else:
            created = repo.checkout_commit(target, force=force)
            console.print(f"HEAD is now at {created.short_id} (detached)")


@app.command()
def switch(
    name: str,
    create: bool = typer.Option(False, "--create", "-c", help="Create the branch first"),
    force: bool = typer.Option(False, "--force", "-f"),
) -> None:
    """Switch to a branch."""
    with errors():
        _repo().switch(name, create=create, force=force)
        console.print(f"Switched to branch '{name}'")


@app.command()
def restore(paths: List[str]) -> None:
    """Restore files from the HEAD commit."""
    with errors():
        repo = _repo()
        for path in _cwd_paths(paths):
            console.print(f"restored {repo.restore_file(path)}")


@app.command()
def reset(
    revision: str,
    hard: bool = typer.Option(False, "--hard", help="Also rewrite the working tree"),
) -> None:
    """Point the current branch at another commit."""
    with errors():
        target = _repo().reset(revision, hard=hard)
        console.print(f"HEAD is now at {target.short_id} {target.message}")


@app.command()
def merge(
    branch: Optional[str] = typer.Argument(None, help="Branch to merge into HEAD"),
    cont: bool = typer.Option(False, "--continue", help="Commit a resolved merge"),
    abort: bool = typer.Option(False, "--abort", help="Abandon the merge in progress"),
) -> None:
    """Merge a branch, or continue/abort a conflicted merge."""
    with errors():
        repo = _repo()
        if cont and abort:
            err_console.print("--continue and --abort are exclusive")
            raise typer.Exit(EXIT_FAILURE)
        if cont:
            result = repo.continue_merge()
            console.print(f"Merge committed: {(result.merge_commit_id or '')[:8]}")
        elif abort:
            repo.abort_merge()
            console.print("Merge aborted")
        elif branch:
            _report_merge(repo.merge_branch(branch))
        else:
            err_console.print("Name a branch, or pass --continue / --abort")
            raise typer.Exit(EXIT_FAILURE)


# -- Remote commands --


def _client(base_url: str, repo_key: str, email: Optional[str] = None, token: Optional[str] = None):
    from .client import HttpTransport, RemoteClient

    base_url = base_url.rstrip("/")
    if token is None:
        creds = CredentialStore().require(base_url)
        email, token = creds.email, creds.token
    return RemoteClient(HttpTransport(base_url, token, email), repo_key)


def _sync(repo: Repository):
    from .client import SyncService

    config = RemoteConfig.load(repo.root)
    return SyncService(repo, _client(config.base_url, config.repo_key))


@app.command()
def remote(
    base_url: Optional[str] = typer.Argument(None, help="Server URL"),
    repo_key: Optional[str] = typer.Argument(None, help="Repository key on the server"),
) -> None:
    """Show or set the remote."""
    with errors():
        repo = _repo()
        if base_url is None:
            try:
                config = RemoteConfig.load(repo.root)
            except NotFoundError:
                console.print("No remote configured")
                return
            console.print(f"{config.base_url} {config.repo_key}")
            return
        if repo_key is None:
            err_console.print("Give both the server URL and the repository key")
            raise typer.Exit(EXIT_FAILURE)
        RemoteConfig(base_url.rstrip("/"), repo_key).save(repo.root)
        console.print(f"Remote set to {base_url} ({repo_key})")


@app.command()
def login(
    email: str = typer.Option(..., "--email", "-e", prompt=True),
    token: str = typer.Option(..., "--token", "-t", prompt=True, hide_input=True),
    base_url: Optional[str] = typer.Option(None, "--url", help="Server URL (default: the configured remote)"),
) -> None:
    """Verify and store credentials for a server."""
    with errors():
        repo_key = None
        if base_url is None:
            config = RemoteConfig.load(_repo().root)
            base_url, repo_key = config.base_url, config.repo_key
        user_id = email
        if repo_key is not None:
            info = _client(base_url, repo_key, email, token).handshake()
            user_id = info["user"]["userId"]
        CredentialStore().save(Credentials(base_url.rstrip("/"), user_id, email, token))
        console.print(f"Logged in to {base_url} as {email}")


@app.command()
def push(branch: Optional[str] = typer.Argument(None)) -> None:
    """Send the branch to the remote."""
    with errors():
        result = _sync(_repo()).push(branch)
        console.print(f"{result.branch} -> {(result.new_head_commit_id or '')[:8]}")


@app.command()
def fetch(branch: Optional[str] = typer.Argument(None, help="Only this remote branch")) -> None:
    """Download remote commits and objects without touching branches or files."""
    with errors():
        heads = _sync(_repo()).fetch(branch)
        if branch is not None and not heads:
            err_console.print(f"Remote branch '{branch}' not found")
            raise typer.Exit(EXIT_FAILURE)
        for name, commit_id in sorted(heads.items()):
            console.print(f"remote/{name} {commit_id[:8]}", highlight=False)


@app.command()
def pull(branch: Optional[str] = typer.Argument(None)) -> None:
    """Fetch the remote branch and merge it."""
    with errors():
        result = _sync(_repo()).pull(branch)
        if result.merge is not None:
            _report_merge(result.merge)
        else:
            console.print(result.outcome.value.replace("-", " ").capitalize())


@app.command()
def clone(
    base_url: str,
    repo_key: str,
    directory: Optional[Path] = typer.Argument(None),
    branch: Optional[str] = typer.Option(None, "--branch", "-b"),
) -> None:
    """Copy a remote repository."""
    from .client import SyncService

    with errors():
        base_url = base_url.rstrip("/")
        target = directory or Path(repo_key)
        repo = SyncService.clone(_client(base_url, repo_key), target, base_url, branch)
        console.print(f"Cloned into {repo.root}")


@app.command()
def serve(
    data: Path = typer.Option(..., "--data", help="Directory for server storage"),
    users: Path = typer.Option(..., "--users", help="JSON file of users and tokens"),
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8080, "--port"),
) -> None:
    """Serve repositories over HTTP."""
    import uvicorn

    from .api import create_app
    from .kv import kv_store
    from .server import RepositoryServer, StaticAuthenticator

    with errors():
        server = RepositoryServer(
            kv_store("disk", path=str(data / "kv")),
            StaticAuthenticator.from_file(users),
            blob_dir=data / "objects",
        )
        console.print(f"Serving on http://{host}:{port}")
        uvicorn.run(create_app(server), host=host, port=port, log_level="debug" if state["verbose"] else "info")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
