"""Ledger Vault CLI - field encryption tooling for finance records."""

import asyncio
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="ledger-vault",
    help="Field-level encryption tooling for personal-finance records.",
    no_args_is_help=True,
)

console = Console()

USER_OPTION = typer.Option(
    ...,
    "--user", "-u",
    envvar="LEDGER_VAULT_USER",
    help="User whose records to operate on",
)
STORE_OPTION = typer.Option(
    None,
    "--store", "-s",
    help="JSON document store (default: LEDGER_VAULT_STORE or ./ledger_vault_store.json)",
)


def _manager(user: str, store: Optional[Path]):
    from ..config.settings import get_settings
    from ..vault import EncryptionManager, JsonDocumentStore, KeySession, SaltCache

    settings = get_settings()
    return EncryptionManager(
        JsonDocumentStore(store or settings.store_path),
        user,
        session=KeySession(user_id=user),
        salt_cache=SaltCache(settings.salt_cache_file),
    )


def _run(coro):
    """Run a coroutine, turning vault errors into a clean exit."""
    from ..vault import VaultError

    try:
        return asyncio.run(coro)
    except VaultError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


def _print_codes(codes: list[str]) -> None:
    table = Table(title="Recovery Codes")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Code", style="bold cyan")
    for i, code in enumerate(codes, 1):
        table.add_row(str(i), code)
    console.print(table)
    console.print("[yellow]Store these codes somewhere safe. They will not be shown again.[/yellow]")


def _print_progress(title: str, progress) -> None:
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("Processed", str(progress.processed))
    table.add_row("Succeeded", str(progress.succeeded))
    table.add_row("Skipped", str(progress.skipped))
    table.add_row("Failed", str(progress.failed))
    console.print(table)

    for document_id, error in progress.errors[:10]:
        console.print(f"  [red]{document_id}[/red]: {error}")
    if len(progress.errors) > 10:
        console.print(f"  ... and {len(progress.errors) - 10} more errors")


@app.command()
def status(
    user: str = USER_OPTION,
    store: Optional[Path] = STORE_OPTION,
):
    """Show a user's encryption status."""
    manager = _manager(user, store)
    info = _run(manager.status())

    console.print(f"\n[bold]User: {info.user_id}[/bold]")
    if info.is_encrypted:
        console.print("Encryption: [green]enabled[/green]")
        console.print(f"  Enabled at: {info.enabled_at or 'unknown'}")
        console.print(f"  Recovery codes: {info.recovery_codes}")
    else:
        console.print("Encryption: [yellow]disabled[/yellow]")
        if info.has_salt:
            console.print("  Encryption metadata is still present")


@app.command()
def enable(
    user: str = USER_OPTION,
    store: Optional[Path] = STORE_OPTION,
    passphrase: str = typer.Option(
        ...,
        "--passphrase", "-p",
        prompt=True,
        hide_input=True,
        confirmation_prompt=True,
        help="Main passphrase (8-128 characters)",
    ),
    no_migrate: bool = typer.Option(
        False,
        "--no-migrate",
        help="Do not encrypt existing records now",
    ),
):
    """
    Enable encryption for a user.

    Generates the salt and recovery codes, then encrypts existing records
    unless --no-migrate is given.
    """
    from ..utils.logging import ProgressLogger

    manager = _manager(user, store)
    progress_logger = ProgressLogger("Migration")
    result = _run(manager.enable_encryption(
        passphrase,
        migrate_existing=not no_migrate,
        progress_callback=progress_logger.update,
    ))

    console.print(f"\n[bold green]Encryption enabled for {user}[/bold green]\n")
    _print_codes(result.recovery_codes)

    if result.migration is not None:
        progress_logger.complete(result.migration.progress)
        _print_progress("Migration", result.migration.progress)


@app.command()
def migrate(
    user: str = USER_OPTION,
    store: Optional[Path] = STORE_OPTION,
    passphrase: str = typer.Option(
        ..., "--passphrase", "-p", prompt=True, hide_input=True,
        help="Passphrase or recovery code",
    ),
):
    """Encrypt any records that are still plaintext."""
    from ..utils.logging import ProgressLogger

    manager = _manager(user, store)
    progress_logger = ProgressLogger("Migration")

    async def run():
        await manager.unlock(passphrase)
        return await manager.migrate(progress_logger.update)

    result = _run(run())
    progress_logger.complete(result.progress)
    _print_progress("Migration", result.progress)
    if not result.success:
        console.print(f"[red]{result.message}[/red]")
        raise typer.Exit(1)


@app.command()
def unencrypt(
    user: str = USER_OPTION,
    store: Optional[Path] = STORE_OPTION,
    passphrase: str = typer.Option(
        ..., "--passphrase", "-p", prompt=True, hide_input=True,
        help="Passphrase or recovery code",
    ),
):
    """Decrypt all records back to plaintext (encryption stays enabled)."""
    from ..utils.logging import ProgressLogger

    manager = _manager(user, store)
    progress_logger = ProgressLogger("Unencryption")

    async def run():
        await manager.unlock(passphrase)
        return await manager.unencrypt(progress_logger.update)

    result = _run(run())
    progress_logger.complete(result.progress)
    _print_progress("Unencryption", result.progress)
    if not result.success:
        console.print(f"[red]{result.message}[/red]")
        raise typer.Exit(1)


@app.command()
def rotate(
    user: str = USER_OPTION,
    store: Optional[Path] = STORE_OPTION,
    passphrase: str = typer.Option(
        ..., "--passphrase", "-p", prompt="Current passphrase", hide_input=True,
        help="Current passphrase or recovery code",
    ),
    new_passphrase: str = typer.Option(
        ..., "--new-passphrase", "-n", prompt="New passphrase", hide_input=True,
        confirmation_prompt=True,
        help="New main passphrase",
    ),
):
    """Re-encrypt every record under a new passphrase."""
    from ..utils.logging import ProgressLogger

    manager = _manager(user, store)
    progress_logger = ProgressLogger("Key rotation")

    async def run():
        await manager.unlock(passphrase)
        return await manager.rotate_key(new_passphrase, progress_logger.update)

    result = _run(run())
    _print_progress("Key rotation", result.progress)

    if not result.success:
        progress_logger.error(result.message)
        raise typer.Exit(1)

    console.print(f"\n[bold green]{result.message}[/bold green]\n")
    _print_codes(result.recovery_codes)


@app.command(name="recovery-codes")
def recovery_codes(
    user: str = USER_OPTION,
    store: Optional[Path] = STORE_OPTION,
    passphrase: str = typer.Option(
        ..., "--passphrase", "-p", prompt=True, hide_input=True,
        help="Current main passphrase",
    ),
):
    """Replace all recovery codes. The old codes stop working."""
    manager = _manager(user, store)

    async def run():
        await manager.unlock(passphrase)
        return await manager.regenerate_recovery_codes(passphrase)

    codes = _run(run())
    _print_codes(codes)


@app.command()
def disable(
    user: str = USER_OPTION,
    store: Optional[Path] = STORE_OPTION,
    passphrase: str = typer.Option(
        ..., "--passphrase", "-p", prompt=True, hide_input=True,
        help="Passphrase or recovery code",
    ),
    unencrypt_first: bool = typer.Option(
        False,
        "--unencrypt",
        help="Decrypt all records before disabling",
    ),
):
    """
    Disable encryption for a user.

    Without --unencrypt, records that are already encrypted stay encrypted.
    """
    manager = _manager(user, store)

    async def run():
        await manager.unlock(passphrase)
        result = await manager.unencrypt() if unencrypt_first else None
        if result is not None and result.progress.failed:
            return result
        await manager.disable()
        return result

    result = _run(run())
    if result is not None:
        _print_progress("Unencryption", result.progress)
        if result.progress.failed:
            console.print("[red]Some records could not be decrypted; encryption was left enabled.[/red]")
            raise typer.Exit(1)

    console.print(f"[bold]Encryption disabled for {user}[/bold]")
    if not unencrypt_first:
        console.print("[yellow]Existing encrypted records remain encrypted.[/yellow]")


@app.command()
def verify(
    user: str = USER_OPTION,
    store: Optional[Path] = STORE_OPTION,
    passphrase: str = typer.Option(
        ..., "--passphrase", "-p", prompt=True, hide_input=True,
        help="Passphrase or recovery code",
    ),
):
    """Check that every encrypted record opens. Writes nothing."""
    manager = _manager(user, store)

    async def run():
        await manager.unlock(passphrase)
        return await manager.verify_integrity()

    report = _run(run())

    table = Table(title="Integrity Check")
    table.add_column("Records", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("Verified", str(report.records_verified))
    table.add_row("Plaintext", str(report.records_plaintext))
    table.add_row("Failed", str(report.records_failed))
    console.print(table)

    for error in report.errors:
        console.print(f"  [red]{error}[/red]")

    if not report.ok:
        raise typer.Exit(1)


@app.command()
def version():
    """Show version information."""
    from .. import __version__

    console.print(f"Ledger Vault v{__version__}")
    console.print("Field-level encryption for finance records")


def main():
    """Entry point for the CLI."""
    from dotenv import load_dotenv

    from ..config.settings import get_settings
    from ..utils.logging import setup_logging

    load_dotenv()
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file)
    app()


if __name__ == "__main__":
    main()
