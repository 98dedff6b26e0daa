"""CLI interface for pyvault."""

import logging
import time
from pathlib import Path
from typing import Any, Optional

import click

from .api import PackageManagerClient
from .cli_progress import SyncProgressDisplay
from .config import config
from .exceptions import VaultError
from .output import OutputFormatter
from .sync import (
    MarkerFolderPolicy,
    SyncDirection,
    SyncResult,
    SyncSummary,
    SyncVerdict,
    VaultSyncEngine,
    list_descendants,
)
from .utils import (
    CONTENT_XML,
    INSTALL_FOLDER,
    format_size,
    get_remote_url_for,
    is_basic_exclude,
)

logger = logging.getLogger(__name__)

Snapshot = dict[Path, float]


@click.group()
@click.option("--server", "-s", help="Server URL (e.g. http://localhost:4502)")
@click.option("--user", "-u", help="User name for basic authentication")
@click.option("--password", "-p", help="Password for basic authentication")
@click.option(
    "--insecure",
    is_flag=True,
    help="Accept self-signed TLS certificates",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option()
@click.pass_context
def main(
    ctx: Any,
    server: Optional[str],
    user: Optional[str],
    password: Optional[str],
    insecure: bool,
    quiet: bool,
    json: bool,
    verbose: bool,
) -> None:
    """pyvault - Sync a content package checkout with a content repository."""
    ctx.ensure_object(dict)
    ctx.obj["server"] = server
    ctx.obj["user"] = user
    ctx.obj["password"] = password
    ctx.obj["insecure"] = insecure
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["verbose"] = verbose

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pyvault").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


def _create_client(ctx: Any) -> PackageManagerClient:
    return PackageManagerClient(
        server_url=ctx.obj.get("server"),
        user=ctx.obj.get("user"),
        password=ctx.obj.get("password"),
        accept_self_signed=True if ctx.obj.get("insecure") else None,
    )


def _print_results(
    out: OutputFormatter, results: list[SyncResult], show_all: bool
) -> None:
    summary = SyncSummary.from_results(results)
    if out.json_output:
        out.output_json(
            {
                "summary": summary.value,
                "results": [r.to_dict() for r in results],
            }
        )
        return

    shown = [
        r for r in results if show_all or r.verdict is not SyncVerdict.IGNORED
    ]
    if shown and not out.quiet:
        out.output_table(
            [{"path": r.path, "result": r.verdict.label} for r in shown],
            ["path", "result"],
            {"path": "Path", "result": "Result"},
        )

    counts: dict[SyncVerdict, int] = {}
    for r in results:
        counts[r.verdict] = counts.get(r.verdict, 0) + 1
    out.print_summary(
        "Sync Complete",
        [("Result", summary.value)]
        + [(verdict.label.capitalize(), str(n)) for verdict, n in counts.items()],
    )


def _run_sync(
    ctx: Any,
    path: str,
    direction: SyncDirection,
    show_all: bool,
    marker_policy: MarkerFolderPolicy = MarkerFolderPolicy.IF_EMPTY,
) -> None:
    out: OutputFormatter = ctx.obj["out"]
    client = _create_client(ctx)
    display = SyncProgressDisplay(direction.value.capitalize())
    engine = VaultSyncEngine(client, reporter=display, marker_policy=marker_policy)

    out.info(f"{direction.value.capitalize()}: {path} <-> {client.server_url}")
    try:
        if out.quiet or out.json_output:
            results = engine.sync(Path(path), direction)
        else:
            with display:
                results = engine.sync(Path(path), direction)
    except KeyboardInterrupt:
        out.warning("Sync cancelled by user")
        ctx.exit(130)
    except VaultError as e:
        out.error(str(e))
        ctx.exit(1)
    finally:
        client.close()

    _print_results(out, results, show_all)


@main.command()
@click.option(
    "--server",
    "-s",
    prompt="Server URL",
    default=lambda: config.server_url,
    help="Server URL",
)
@click.option(
    "--user", "-u", prompt="User", default=lambda: config.user, help="User name"
)
@click.option(
    "--password",
    "-p",
    prompt="Password",
    hide_input=True,
    help="Password",
)
@click.option(
    "--accept-self-signed",
    is_flag=True,
    help="Accept self-signed TLS certificates",
)
@click.option(
    "--auto-sync",
    is_flag=True,
    help="Allow 'pyvault watch' to push changes automatically",
)
@click.pass_context
def init(
    ctx: Any,
    server: str,
    user: str,
    password: str,
    accept_self_signed: bool,
    auto_sync: bool,
) -> None:
    """Initialize pyvault configuration.

    Stores the server URL and credentials in ~/.config/pyvault/config for
    future use.
    """
    out: OutputFormatter = ctx.obj["out"]

    try:
        config.save(
            server_url=server.rstrip("/"),
            user=user,
            password=password,
            accept_self_signed=accept_self_signed,
            auto_sync=auto_sync,
        )
    except OSError as e:
        out.error(f"Initialization failed: {e}")
        ctx.exit(1)

    out.print_summary(
        "Initialization Complete",
        [
            ("Status", "Configuration saved successfully"),
            ("Config file", str(config.get_config_path())),
            ("Server", server.rstrip("/")),
            ("Auto sync", "enabled" if auto_sync else "disabled"),
        ],
    )


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--all", "show_all", is_flag=True, help="Also list ignored paths")
@click.pass_context
def push(ctx: Any, path: str, show_all: bool) -> None:
    """Push a file or folder of a checkout to the server.

    PATH: File or folder below a jcr_root folder
    """
    _run_sync(ctx, path, SyncDirection.PUSH, show_all)


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--all", "show_all", is_flag=True, help="Also list ignored paths")
@click.option(
    "--marker-folders",
    type=click.Choice([p.value for p in MarkerFolderPolicy]),
    default=MarkerFolderPolicy.IF_EMPTY.value,
    help="What to do with folders whose .content.xml was deleted "
    "(default: if_empty)",
)
@click.pass_context
def pull(ctx: Any, path: str, show_all: bool, marker_folders: str) -> None:
    """Pull a file or folder of a checkout from the server.

    Local files the server no longer has are deleted.

    PATH: File or folder below a jcr_root folder
    """
    _run_sync(
        ctx, path, SyncDirection.PULL, show_all, MarkerFolderPolicy(marker_folders)
    )


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option("--all", "show_all", is_flag=True, help="Also list ignored paths")
@click.pass_context
def status(ctx: Any, path: str, show_all: bool) -> None:
    """Show what a sync of PATH would include, without contacting the server."""
    out: OutputFormatter = ctx.obj["out"]
    engine = VaultSyncEngine(_create_client(ctx))

    try:
        results = engine.status(Path(path))
    except VaultError as e:
        out.error(str(e))
        ctx.exit(1)

    if out.json_output:
        out.output_json([r.to_dict() for r in results])
        return

    shown = [
        r for r in results if show_all or r.verdict is not SyncVerdict.IGNORED
    ]
    if not shown:
        out.info("No files would be synced.")
        return
    out.output_table(
        [{"path": r.path, "result": r.verdict.label} for r in shown],
        ["path", "result"],
        {"path": "Path", "result": "Result"},
    )


@main.command("open")
@click.argument("path", type=click.Path(exists=True))
@click.option(
    "--print-only", is_flag=True, help="Print the URL instead of opening it"
)
@click.pass_context
def open_remote(ctx: Any, path: str, print_only: bool) -> None:
    """Open the page rendered for a checkout path in the browser."""
    out: OutputFormatter = ctx.obj["out"]
    server = ctx.obj.get("server") or config.get_remote_url()

    try:
        url = get_remote_url_for(Path(path).resolve(), server)
    except ValueError as e:
        out.error(str(e))
        ctx.exit(1)

    if out.json_output:
        out.output_json({"url": url})
    else:
        out.print(url)
    if not print_only:
        click.launch(url)


@main.command("install-deps")
@click.argument(
    "directory", type=click.Path(exists=True, file_okay=False, dir_okay=True)
)
@click.option(
    "--target",
    "-t",
    default=INSTALL_FOLDER,
    show_default=True,
    help="Repository folder the files are posted to",
)
@click.option(
    "--workers",
    "-j",
    type=int,
    default=4,
    help="Number of parallel uploads (default: 4)",
)
@click.pass_context
def install_deps(ctx: Any, directory: str, target: str, workers: int) -> None:
    """Install dependency packages by posting them to the install folder.

    DIRECTORY: Folder holding the package files
    """
    out: OutputFormatter = ctx.obj["out"]
    files = [
        f for f in sorted(Path(directory).iterdir())
        if f.is_file() and not is_basic_exclude(f)
    ]
    if not files:
        out.warning(f"No files found in {directory}")
        return

    total = sum(f.stat().st_size for f in files)
    out.info(f"Posting {len(files)} file(s) ({format_size(total)}) to {target}")

    client = _create_client(ctx)
    try:
        posted = client.post_files(target, files, max_workers=workers)
    except VaultError as e:
        out.error(str(e))
        ctx.exit(1)
    finally:
        client.close()

    if out.json_output:
        out.output_json({"target": target, "files": [f.name for f in posted]})
    else:
        out.success(f"Posted {len(posted)} file(s) to {target}")


def take_snapshot(path: Path) -> Snapshot:
    """Record the modification time of every file below ``path``."""
    snapshot: Snapshot = {}
    for file_path in list_descendants(path):
        if is_basic_exclude(file_path):
            continue
        try:
            snapshot[file_path] = file_path.stat().st_mtime
        except FileNotFoundError:
            continue
    return snapshot


def get_push_targets(before: Snapshot, after: Snapshot) -> list[Path]:
    """Return the paths to push for the changes between two snapshots.

    A changed ``.content.xml`` pushes its folder; a deleted file pushes the
    folder it was in, so that the deletion reaches the server.
    """
    targets: set[Path] = set()
    for file_path, mtime in after.items():
        if before.get(file_path) == mtime:
            continue
        if file_path.name == CONTENT_XML:
            targets.add(file_path.parent)
        else:
            targets.add(file_path)
    for file_path in before:
        if file_path not in after:
            targets.add(file_path.parent)

    # Pushing a folder covers everything below it
    folders = {t for t in targets if t not in after}
    return sorted(
        t for t in targets if not any(f in t.parents for f in folders)
    )


@main.command()
@click.argument("path", type=click.Path(exists=True))
@click.option(
    "--interval",
    "-i",
    type=float,
    default=2.0,
    help="Seconds between scans (default: 2.0)",
)
@click.option(
    "--force",
    is_flag=True,
    help="Watch even when auto sync is disabled in the configuration",
)
@click.pass_context
def watch(ctx: Any, path: str, interval: float, force: bool) -> None:
    """Push changes below PATH to the server as they happen.

    Requires auto sync to be enabled ('pyvault init --auto-sync') unless
    --force is given. Stop with Ctrl+C.
    """
    out: OutputFormatter = ctx.obj["out"]
    if not (force or config.get_auto_sync_enabled()):
        out.error("Auto sync is disabled.")
        out.info("Run 'pyvault init --auto-sync' or pass --force")
        ctx.exit(1)

    root = Path(path).resolve()
    client = _create_client(ctx)
    engine = VaultSyncEngine(client)
    out.info(f"Watching {root} (Ctrl+C to stop)")

    try:
        snapshot = take_snapshot(root)
        while True:
            time.sleep(interval)
            current = take_snapshot(root)
            for target in get_push_targets(snapshot, current):
                if not target.exists():
                    continue
                try:
                    results = engine.push(target)
                except VaultError as e:
                    out.error(f"Failed to push {target}: {e}")
                    continue
                synced = sum(1 for r in results if r.verdict.is_synced)
                out.success(f"Pushed {target} ({synced} file(s))")
            snapshot = current
    except KeyboardInterrupt:
        out.info("Stopped watching")
    finally:
        client.close()


if __name__ == "__main__":
    main()
