"""Typer-powered command line for ``microcks``.

Every command runs inside a :meth:`StructuredLogger.operation` scope so the
outcome lands in ``<config dir>/logs/operations.jsonl``. Expected failures are
raised as :class:`~microcks_cli.errors.MicrocksCliError` subclasses and mapped
onto the exit codes in :mod:`microcks_cli.exit_codes`.
"""
from __future__ import annotations

import logging
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__
from .auth import decode_claims
from .conformance import (
    RUNNER_CHOICES,
    parse_filtered_operations,
    parse_oauth2_context,
    parse_operations_headers,
    parse_wait_for,
    result_url,
    wait_for_result,
)
from .errors import (
    MicrocksCliError,
    NotFoundError,
    TokenError,
    UpstreamError,
)
from .exit_codes import ExitCode
from .importer import (
    ImportDirectoryError,
    import_directory,
    parse_artifact_specs,
    parse_url_specs,
)
from .logging import OperationScope, StructuredLogger
from .providers import (
    KEYCLOAK_DISABLED,
    ContainerClient,
    ContainerOpts,
    MicrocksClient,
    TestResultSummary,
    TokenPair,
)
from .settings import AppSettings, load_settings
from .sso import SSO_CLIENT_ID, run_sso_login
from .state import (
    Auth,
    ContextRef,
    Instance,
    InstanceStatus,
    LocalConfig,
    Server,
    User,
    WatchConfig,
    WatchEntry,
    delete_local_config,
    load_registry,
    normalize_watch_path,
    read_local_config,
    read_watch_config,
    write_local_config,
    write_watch_config,
)
from .watcher import WatchManager, make_importer

console = Console()
err_console = Console(stderr=True)

CONFIG_DIR_OPTION = typer.Option(
    None,
    "--config-dir",
    help="Directory holding the local configuration and watch registry.",
)
CONTEXT_OPTION = typer.Option(
    None,
    "--context",
    "-c",
    help="Name of the context to use instead of the current one.",
)
INSECURE_OPTION = typer.Option(
    False,
    "--insecure",
    help="Skip TLS certificate verification.",
)
CA_CERTS_OPTION = typer.Option(
    None,
    "--ca-certs",
    help="Comma separated list of extra CA certificate files to trust.",
)
VERBOSE_OPTION = typer.Option(
    False,
    "--verbose",
    "-v",
    help="Dump HTTP requests and responses.",
)
MICROCKS_URL_OPTION = typer.Option(
    None,
    "--microcks-url",
    help="Microcks API URL; bypasses the local configuration.",
)
KEYCLOAK_CLIENT_ID_OPTION = typer.Option(
    None,
    "--keycloak-client-id",
    help="Keycloak service account client id used with --microcks-url.",
)
KEYCLOAK_CLIENT_SECRET_OPTION = typer.Option(
    None,
    "--keycloak-client-secret",
    help="Keycloak service account client secret used with --microcks-url.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Command line client for Microcks.

        Log in to servers, import API artifacts, launch conformance tests
        and run local Microcks instances in Docker or Podman.
        """
    ).strip(),
)


@dataclass(slots=True)
class RuntimeContext:
    """Objects shared across CLI commands for a single invocation."""

    settings: AppSettings
    logger: StructuredLogger
    context: str = ""


def _configure_logging(verbose: bool, *, level: int = logging.WARNING) -> None:
    package_logger = logging.getLogger(__package__)
    for existing in list(package_logger.handlers):
        package_logger.removeHandler(existing)
    handler = RichHandler(console=err_console, show_time=False, show_path=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    package_logger.addHandler(handler)
    package_logger.setLevel(logging.DEBUG if verbose else level)


def _ensure_runtime(
    ctx: typer.Context,
    overrides: dict[str, object] | None = None,
    context: str | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        settings = load_settings(overrides=overrides)
    except MicrocksCliError as exc:
        err_console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=ExitCode.GENERIC) from exc
    _configure_logging(settings.client.verbose)
    runtime = RuntimeContext(
        settings=settings,
        logger=StructuredLogger(settings.logs_dir),
        context=context or "",
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the microcks CLI version and exit.",
    ),
    config_dir: Path | None = CONFIG_DIR_OPTION,
    context: str | None = CONTEXT_OPTION,
    insecure: bool = INSECURE_OPTION,
    ca_certs: str | None = CA_CERTS_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    overrides: dict[str, object] = {
        "config_dir": config_dir,
        "ca_certs": ca_certs,
        "insecure_tls": True if insecure else None,
        "verbose": True if verbose else None,
    }
    runtime = _ensure_runtime(ctx, overrides, context)
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"microcks-cli {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


def _exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, NotFoundError):
        return ExitCode.NOT_FOUND
    if isinstance(exc, TokenError):
        return ExitCode.GENERIC
    if isinstance(exc, UpstreamError):
        return ExitCode.CONNECTION if exc.status_code is None else ExitCode.API_RESPONSE
    if isinstance(exc, ImportDirectoryError):
        return ExitCode.COMMAND
    return ExitCode.GENERIC


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.GENERIC,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _fail(op: OperationScope, exc: MicrocksCliError) -> NoReturn:
    _command_error(op, str(exc), rc=_exit_code_for(exc))


def _load_config_or_empty(runtime: RuntimeContext) -> LocalConfig:
    return read_local_config(runtime.settings.config_file) or LocalConfig()


def _require_config(runtime: RuntimeContext, op: OperationScope) -> LocalConfig:
    local_config = read_local_config(runtime.settings.config_file)
    if local_config is None:
        _command_error(
            op,
            f"No local configuration found at {runtime.settings.config_file}.",
            rc=ExitCode.NOT_FOUND,
        )
    return local_config


def _save_config(runtime: RuntimeContext, local_config: LocalConfig) -> None:
    if local_config.is_empty():
        delete_local_config(runtime.settings.config_file)
    else:
        write_local_config(local_config, runtime.settings.config_file)


def _build_client(
    runtime: RuntimeContext,
    op: OperationScope,
    microcks_url: str | None,
    client_id: str | None,
    client_secret: str | None,
) -> MicrocksClient:
    """Return a client for ``--microcks-url`` or for the selected local context."""
    settings = runtime.settings.client
    if not microcks_url:
        client = MicrocksClient.from_local_config(
            runtime.settings.config_file,
            runtime.context,
            settings=settings,
        )
        op.add_step("context.resolve", detail=client.context_name)
        return client

    client = MicrocksClient(microcks_url, settings=settings)
    client.context_name = microcks_url
    try:
        realm_url = client.get_keycloak_url()
        if realm_url != KEYCLOAK_DISABLED:
            if not client_id or not client_secret:
                _command_error(
                    op,
                    "--keycloak-client-id and --keycloak-client-secret are required "
                    "when the server is protected by Keycloak.",
                    rc=ExitCode.COMMAND,
                )
            with client.keycloak_client(realm_url, client_id, client_secret) as keycloak:
                client.set_oauth_token(keycloak.connect_and_get_token())
            op.add_step("keycloak.client_credentials", detail=realm_url)
    except BaseException:
        client.close()
        raise
    return client


# ---------------------------------------------------------------------------
# Authentication and contexts
# ---------------------------------------------------------------------------
@app.command()
def login(
    ctx: typer.Context,
    server: str = typer.Argument(..., help="Microcks server address, e.g. http://localhost:8080."),
    name: str | None = typer.Option(
        None,
        "--name",
        help="Name of the context to create or update (defaults to the server address).",
    ),
    username: str | None = typer.Option(None, "--username", help="Keycloak user name."),
    password: str | None = typer.Option(None, "--password", help="Keycloak password."),
    sso: bool = typer.Option(False, "--sso", help="Log in through the browser."),
    sso_launch_browser: bool = typer.Option(
        True,
        "--sso-launch-browser/--no-sso-launch-browser",
        help="Open the login page automatically during --sso.",
    ),
    sso_port: int | None = typer.Option(
        None,
        "--sso-port",
        help="Local port receiving the SSO callback.",
    ),
) -> None:
    """Log in to a Microcks server and make it the current context."""
    runtime = _get_runtime(ctx)
    settings = runtime.settings
    context_name = name or server
    with runtime.logger.operation(
        "login",
        args={"server": server, "name": context_name, "username": username, "sso": sso},
        target={"kind": "server", "server": server},
    ) as op:
        try:
            local_config = _load_config_or_empty(runtime)
            with MicrocksClient(server, settings=settings.client) as client:
                realm_url = client.get_keycloak_url()
                op.add_step("keycloak.discover", detail=realm_url)
                auth = Auth(server=server)
                tokens = TokenPair(access_token="")
                if realm_url == KEYCLOAK_DISABLED:
                    console.print("Keycloak is disabled on this server; no credentials needed.")
                elif sso:
                    with client.keycloak_client(realm_url, SSO_CLIENT_ID) as keycloak:
                        tokens = run_sso_login(
                            keycloak,
                            port=sso_port or settings.sso_port,
                            launch_browser=sso_launch_browser,
                            echo=typer.echo,
                        )
                    auth = Auth(server=server, client_id=SSO_CLIENT_ID)
                else:
                    if not settings.client_id or not settings.client_secret:
                        _command_error(
                            op,
                            "Please set MICROCKS_CLIENT_ID and MICROCKS_CLIENT_SECRET "
                            "to log in with a user name and password.",
                            rc=ExitCode.COMMAND,
                        )
                    username = username or typer.prompt("Username")
                    password = password or typer.prompt("Password", hide_input=True)
                    with client.keycloak_client(
                        realm_url, settings.client_id, settings.client_secret
                    ) as keycloak:
                        tokens = keycloak.connect_and_get_token_and_refresh_token(
                            username, password
                        )
                    auth = Auth(
                        server=server,
                        client_id=settings.client_id,
                        client_secret=settings.client_secret,
                    )
                op.add_step("keycloak.token", detail=bool(tokens.access_token))

            keycloak_enabled = realm_url != KEYCLOAK_DISABLED
            try:
                instance = local_config.get_context(context_name).instance
            except NotFoundError:
                instance = ""
            local_config.upsert_server(
                Server(
                    server=server,
                    name=server,
                    insecure_tls=settings.client.insecure_tls,
                    keycloak_enabled=keycloak_enabled,
                )
            )
            if keycloak_enabled:
                local_config.upsert_auth(auth)
            local_config.upsert_user(
                User(
                    name=server,
                    auth_token=tokens.access_token,
                    refresh_token=tokens.refresh_token,
                )
            )
            local_config.upsert_context(
                ContextRef(name=context_name, server=server, user=server, instance=instance)
            )
            local_config.current_context = context_name
            write_local_config(local_config, settings.config_file)
            who = ""
            if tokens.access_token:
                who = str(decode_claims(tokens.access_token).get("preferred_username") or "")
        except MicrocksCliError as exc:
            _fail(op, exc)

        if who:
            console.print(f"[green]'{escape(who)}' logged in successfully[/green]")
        else:
            console.print(f"[green]Logged in to {escape(server)}[/green]")
        console.print(f"Context '{escape(context_name)}' updated")
        op.success(f"Logged in to {server}.", changed=1, context={"context": context_name})


@app.command()
def logout(
    ctx: typer.Context,
    context: str = typer.Argument(..., help="Context whose tokens should be discarded."),
) -> None:
    """Forget the tokens cached for a context."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "logout",
        args={"context": context},
        target={"kind": "context", "name": context},
    ) as op:
        try:
            local_config = _require_config(runtime, op)
            resolved = local_config.resolve_context(context)
            local_config.remove_token(resolved.user.name)
            write_local_config(local_config, runtime.settings.config_file)
        except MicrocksCliError as exc:
            _fail(op, exc)
        console.print(f"Logged out from '{escape(context)}'")
        op.success(f"Logged out from {context}.", changed=1)


@app.command("context")
def context_command(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help="Context to switch to (or delete)."),
    delete: bool = typer.Option(False, "--delete", "-d", help="Delete the named context."),
) -> None:
    """List contexts, switch the current one or delete one."""
    runtime = _get_runtime(ctx)
    action = "delete" if delete else ("use" if name else "list")
    with runtime.logger.operation(
        f"context {action}",
        args={"name": name, "delete": delete},
        target={"kind": "context", "name": name or "*"},
    ) as op:
        if delete and not name:
            _command_error(op, "Context name is required with --delete.", rc=ExitCode.COMMAND)
        try:
            local_config = _load_config_or_empty(runtime)
            if name is None:
                _print_contexts(local_config)
                op.success("Reported context list.", changed=0)
                return
            if delete:
                if not local_config.delete_context(name):
                    _command_error(op, f"Context '{name}' undefined", rc=ExitCode.NOT_FOUND)
                _save_config(runtime, local_config)
                console.print(f"Context '{escape(name)}' deleted")
                op.success(f"Deleted context {name}.", changed=1)
                return
            if local_config.current_context == name:
                console.print(f"Already at context '{escape(name)}'")
                op.success("Context unchanged.", changed=0)
                return
            local_config.get_context(name)
            local_config.current_context = name
            write_local_config(local_config, runtime.settings.config_file)
        except MicrocksCliError as exc:
            _fail(op, exc)
        console.print(f"Switched to context '{escape(name)}'")
        op.success(f"Switched to context {name}.", changed=1)


def _print_contexts(local_config: LocalConfig) -> None:
    if not local_config.contexts:
        console.print("No contexts defined. Run 'microcks login' or 'microcks start'.")
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Current")
    table.add_column("Name")
    table.add_column("Server")
    table.add_column("Instance")
    for ref in local_config.contexts:
        marker = "*" if ref.name == local_config.current_context else ""
        table.add_row(marker, ref.name, ref.server, ref.instance or "-")
    console.print(table)


# ---------------------------------------------------------------------------
# Artifact import
# ---------------------------------------------------------------------------
@app.command("import")
def import_command(
    ctx: typer.Context,
    specification_files: str = typer.Argument(
        ...,
        metavar="FILE[:PRIMARY],...",
        help="Comma separated artifact files, each optionally suffixed with :true or :false.",
    ),
    watch: bool = typer.Option(
        False,
        "--watch",
        help="Register the files so 'microcks watch' re-imports them on change.",
    ),
    microcks_url: str | None = MICROCKS_URL_OPTION,
    keycloak_client_id: str | None = KEYCLOAK_CLIENT_ID_OPTION,
    keycloak_client_secret: str | None = KEYCLOAK_CLIENT_SECRET_OPTION,
) -> None:
    """Upload local artifact files to Microcks."""
    runtime = _get_runtime(ctx)
    specs = parse_artifact_specs(specification_files)
    with runtime.logger.operation(
        "import",
        args={
            "files": [spec.path for spec in specs],
            "watch": watch,
            "microcks_url": microcks_url,
            "keycloak_client_secret": keycloak_client_secret,
        },
        target={"kind": "artifact", "count": len(specs)},
    ) as op:
        if not specs:
            _command_error(op, "No artifact file given.", rc=ExitCode.COMMAND)
        try:
            with _build_client(
                runtime, op, microcks_url, keycloak_client_id, keycloak_client_secret
            ) as client:
                for spec in specs:
                    message = client.upload_artifact(spec.path, spec.main_artifact)
                    op.add_step("artifact.upload", detail=spec.path)
                    console.print(f"Microcks has discovered '{escape(message)}'")
                context_name = client.context_name
            if watch:
                registry = load_registry(runtime.settings.watch_file)
                for spec in specs:
                    registry.upsert_entry(
                        WatchEntry(
                            file_path=normalize_watch_path(spec.path),
                            context=[context_name],
                            main_artifact=spec.main_artifact,
                        )
                    )
                write_watch_config(registry, runtime.settings.watch_file)
                op.add_step("watch.register", detail=context_name)
                console.print(
                    f"Registered {len(specs)} file(s) for re-import into '{escape(context_name)}'"
                )
        except MicrocksCliError as exc:
            _fail(op, exc)
        op.success(f"Imported {len(specs)} artifact(s).", changed=len(specs))


@app.command("import-url")
def import_url(
    ctx: typer.Context,
    specification_urls: str = typer.Argument(
        ...,
        metavar="URL[:PRIMARY[:SECRET]],...",
        help="Comma separated artifact URLs, each optionally suffixed with a primary flag and secret name.",
    ),
    microcks_url: str | None = MICROCKS_URL_OPTION,
    keycloak_client_id: str | None = KEYCLOAK_CLIENT_ID_OPTION,
    keycloak_client_secret: str | None = KEYCLOAK_CLIENT_SECRET_OPTION,
) -> None:
    """Ask Microcks to import artifacts published at remote URLs."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "import-url",
        args={
            "urls": specification_urls,
            "microcks_url": microcks_url,
            "keycloak_client_secret": keycloak_client_secret,
        },
        target={"kind": "artifact"},
    ) as op:
        try:
            specs = parse_url_specs(specification_urls)
        except ValueError as exc:
            _command_error(op, str(exc), rc=ExitCode.COMMAND)
        if not specs:
            _command_error(op, "No artifact URL given.", rc=ExitCode.COMMAND)
        try:
            with _build_client(
                runtime, op, microcks_url, keycloak_client_id, keycloak_client_secret
            ) as client:
                for spec in specs:
                    message = client.download_artifact(spec.url, spec.main_artifact, spec.secret)
                    op.add_step("artifact.download", detail=spec.url)
                    console.print(f"Microcks has discovered '{escape(message)}'")
        except MicrocksCliError as exc:
            _fail(op, exc)
        op.success(f"Imported {len(specs)} artifact(s).", changed=len(specs))


@app.command("import-dir")
def import_dir(
    ctx: typer.Context,
    directory: Path = typer.Argument(..., help="Directory to scan for artifacts."),
    recursive: bool = typer.Option(False, "--recursive", "-r", help="Scan sub-directories too."),
    pattern: str = typer.Option(
        "",
        "--pattern",
        "-p",
        help="Only import files whose name matches this glob, e.g. '*-openapi.yaml'.",
    ),
    microcks_url: str | None = MICROCKS_URL_OPTION,
    keycloak_client_id: str | None = KEYCLOAK_CLIENT_ID_OPTION,
    keycloak_client_secret: str | None = KEYCLOAK_CLIENT_SECRET_OPTION,
) -> None:
    """Upload every artifact found in a directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "import-dir",
        args={
            "directory": directory,
            "recursive": recursive,
            "pattern": pattern,
            "microcks_url": microcks_url,
            "keycloak_client_secret": keycloak_client_secret,
        },
        target={"kind": "directory", "path": str(directory)},
    ) as op:
        try:
            with _build_client(
                runtime, op, microcks_url, keycloak_client_id, keycloak_client_secret
            ) as client:
                result = import_directory(client, directory, recursive=recursive, pattern=pattern)
        except MicrocksCliError as exc:
            _fail(op, exc)

        for path in result.success_files:
            console.print(f"[green]✓[/green] {escape(path)}")
        for error in result.errors:
            console.print(f"[red]✗[/red] {escape(error)}")
        console.print(
            f"Imported {result.success_count} of {result.total_files} file(s), "
            f"{result.failed_count} failed"
        )
        if result.failed_count:
            op.warning(
                "Some artifacts failed to import.",
                errors=result.errors,
                changed=result.success_count,
                context=result.to_dict(),
            )
        else:
            op.success(
                f"Imported {result.success_count} artifact(s).",
                changed=result.success_count,
                context=result.to_dict(),
            )


# ---------------------------------------------------------------------------
# Conformance tests
# ---------------------------------------------------------------------------
@app.command("test")
def run_test(
    ctx: typer.Context,
    service_ref: str = typer.Argument(..., metavar="API_NAME:API_VERSION", help="Service to test."),
    test_endpoint: str = typer.Argument(..., help="URL of the implementation under test."),
    runner: str = typer.Argument(..., help=f"Test runner: {', '.join(RUNNER_CHOICES)}."),
    wait_for: str = typer.Option(
        "5sec",
        "--wait-for",
        help="Time to wait for the test to finish, e.g. 500milli, 5sec or 1min.",
    ),
    secret_name: str = typer.Option("", "--secret-name", help="Secret used to reach the endpoint."),
    filtered_operations: str = typer.Option(
        "",
        "--filtered-operations",
        help="JSON list of the operations to test.",
    ),
    operations_headers: str = typer.Option(
        "",
        "--operations-headers",
        help="JSON object of headers to send, keyed by operation or 'globals'.",
    ),
    oauth2_context: str = typer.Option(
        "",
        "--oauth2-context",
        help="JSON OAuth2 client context used to authenticate against the endpoint.",
    ),
    microcks_url: str | None = MICROCKS_URL_OPTION,
    keycloak_client_id: str | None = KEYCLOAK_CLIENT_ID_OPTION,
    keycloak_client_secret: str | None = KEYCLOAK_CLIENT_SECRET_OPTION,
) -> None:
    """Launch a conformance test and wait for its outcome."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "test",
        args={
            "service": service_ref,
            "endpoint": test_endpoint,
            "runner": runner,
            "wait_for": wait_for,
            "microcks_url": microcks_url,
            "keycloak_client_secret": keycloak_client_secret,
        },
        target={"kind": "service", "name": service_ref},
    ) as op:
        if runner not in RUNNER_CHOICES:
            _command_error(
                op,
                f"Runner must be one of: {', '.join(RUNNER_CHOICES)}",
                rc=ExitCode.COMMAND,
            )
        wait_ms = parse_wait_for(wait_for)

        def _report(summary: TestResultSummary) -> None:
            state = "in progress" if summary.in_progress else "completed"
            console.print(f"Test '{summary.id}' {state}, success: {summary.success}")

        try:
            with _build_client(
                runtime, op, microcks_url, keycloak_client_id, keycloak_client_secret
            ) as client:
                test_id = client.create_test_result(
                    service_ref,
                    test_endpoint,
                    runner,
                    timeout=wait_ms,
                    secret_name=secret_name,
                    filtered_operations=parse_filtered_operations(filtered_operations),
                    operations_headers=parse_operations_headers(operations_headers),
                    oauth2_context=parse_oauth2_context(oauth2_context),
                )
                op.add_step("test.create", detail=test_id)
                console.print(f"Launched test '{test_id}'")
                summary = wait_for_result(client, test_id, wait_ms, on_status=_report)
                server_url = client.server_url
        except MicrocksCliError as exc:
            _fail(op, exc)

        console.print(
            f"Full TestResult details are available here: {result_url(server_url, test_id)}"
        )
        if not summary.success:
            message = (
                f"Test '{test_id}' did not complete in time."
                if summary.in_progress
                else f"Test '{test_id}' failed."
            )
            _command_error(op, message, rc=ExitCode.COMMAND)
        op.success(f"Test {test_id} succeeded.", changed=0, context={"test_id": test_id})


# ---------------------------------------------------------------------------
# Local instances
# ---------------------------------------------------------------------------
@app.command()
def start(
    ctx: typer.Context,
    name: str = typer.Option("microcks", "--name", help="Name of the local instance."),
    port: int | None = typer.Option(None, "--port", help="Host port for the Microcks UI and API."),
    image: str | None = typer.Option(None, "--image", help="Microcks container image."),
    rm: bool = typer.Option(False, "--rm", help="Remove the container once it stops."),
    driver: str | None = typer.Option(None, "--driver", help="Container runtime: docker or podman."),
) -> None:
    """Start (creating it if needed) a local Microcks container."""
    runtime = _get_runtime(ctx)
    settings = runtime.settings
    with runtime.logger.operation(
        "start",
        args={"name": name, "port": port, "image": image, "rm": rm, "driver": driver},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            local_config = _load_config_or_empty(runtime)
            try:
                instance = local_config.get_instance(name)
            except NotFoundError:
                instance = None

            if instance is not None and instance.status == InstanceStatus.RUNNING.value:
                console.print(
                    f"Instance '{escape(name)}' is already running on port {instance.port}"
                )
                op.success("Instance already running.", changed=0)
                return

            if instance is not None and instance.container_id:
                containers = ContainerClient(driver=instance.driver or settings.driver)
                try:
                    containers.start_container(instance.container_id)
                finally:
                    containers.close()
                op.add_step("container.start", detail=instance.container_id)
            else:
                resolved_driver = driver or settings.driver
                resolved_port = str(port or settings.port)
                resolved_image = image or settings.image
                containers = ContainerClient(driver=resolved_driver)
                try:
                    container_id = containers.create_container(
                        ContainerOpts(
                            image=resolved_image,
                            port=resolved_port,
                            auto_remove=rm,
                            name=name,
                        )
                    )
                    op.add_step("container.create", detail=container_id)
                    instance = Instance(
                        name=name,
                        image=resolved_image,
                        status=InstanceStatus.CREATED.value,
                        port=resolved_port,
                        container_id=container_id,
                        auto_remove=rm,
                        driver=resolved_driver,
                    )
                    local_config.upsert_instance(instance)
                    write_local_config(local_config, settings.config_file)
                    containers.start_container(container_id)
                finally:
                    containers.close()
                op.add_step("container.start", detail=container_id)

            instance.status = InstanceStatus.RUNNING.value
            local_config.upsert_instance(instance)
            server_url = f"http://localhost:{instance.port}"
            local_config.upsert_server(Server(server=server_url, name=name))
            try:
                local_config.get_user(server_url)
            except NotFoundError:
                local_config.upsert_user(User(name=server_url))
            local_config.upsert_context(
                ContextRef(name=name, server=server_url, user=server_url, instance=name)
            )
            local_config.current_context = name
            write_local_config(local_config, settings.config_file)
        except MicrocksCliError as exc:
            _fail(op, exc)

        console.print(f"[green]Microcks instance '{escape(name)}' started on {server_url}[/green]")
        op.success(f"Started instance {name}.", changed=1, context={"server": server_url})


@app.command()
def stop(
    ctx: typer.Context,
    name: str | None = typer.Argument(
        None,
        help="Instance to stop (defaults to the instance of the current context).",
    ),
) -> None:
    """Stop a local Microcks container."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "stop",
        args={"name": name},
        target={"kind": "instance", "name": name or ""},
    ) as op:
        try:
            local_config = _require_config(runtime, op)
            if name:
                instance = local_config.get_instance(name)
            else:
                resolved = local_config.resolve_context(runtime.context)
                if not resolved.instance.name:
                    _command_error(
                        op,
                        f"Context '{resolved.name}' has no local instance.",
                        rc=ExitCode.NOT_FOUND,
                    )
                instance = local_config.get_instance(resolved.instance.name)

            console.print(f"Stopping container {escape(instance.container_id)}...")
            containers = ContainerClient(driver=instance.driver or runtime.settings.driver)
            try:
                containers.stop_container(instance.container_id)
            finally:
                containers.close()
            op.add_step("container.stop", detail=instance.container_id)

            if instance.auto_remove:
                stale = [ref.name for ref in local_config.contexts if ref.instance == instance.name]
                local_config.remove_instance(instance.name)
                for context_name in stale:
                    local_config.delete_context(context_name)
            else:
                instance.status = InstanceStatus.STOPPED.value
                local_config.upsert_instance(instance)
            _save_config(runtime, local_config)
        except MicrocksCliError as exc:
            _fail(op, exc)

        console.print(f"[green]Microcks instance '{escape(instance.name)}' stopped[/green]")
        op.success(f"Stopped instance {instance.name}.", changed=1)


# ---------------------------------------------------------------------------
# Watch mode
# ---------------------------------------------------------------------------
@app.command()
def watch(ctx: typer.Context) -> None:
    """Re-import registered artifacts whenever they change on disk."""
    runtime = _get_runtime(ctx)
    settings = runtime.settings
    _configure_logging(settings.client.verbose, level=logging.INFO)
    registry_path = settings.watch_file
    with runtime.logger.operation(
        "watch",
        args={"registry": registry_path},
        target={"kind": "watch", "path": str(registry_path)},
    ) as op:
        try:
            if read_watch_config(registry_path) is None:
                write_watch_config(WatchConfig(), registry_path)
            manager = WatchManager(
                registry_path,
                importer=make_importer(settings.config_file, settings.client),
            )
        except MicrocksCliError as exc:
            _fail(op, exc)
        except OSError as exc:
            _command_error(op, f"Cannot start watcher: {exc}", rc=ExitCode.GENERIC)

        console.print(f"Watching artifacts registered in {escape(str(registry_path))} (Ctrl-C to stop)")
        try:
            manager.run()
        except KeyboardInterrupt:
            console.print("Watcher stopped")
        except MicrocksCliError as exc:
            _fail(op, exc)
        finally:
            manager.close()
        op.success("Watcher stopped.", changed=0)


@app.command()
def version(ctx: typer.Context) -> None:
    """Print the CLI version."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "version",
        args={},
        target={"kind": "meta", "scope": "version"},
    ) as op:
        console.print(f"microcks-cli {__version__}")
        op.success("Reported CLI version.", changed=0)


def main() -> None:  # pragma: no cover - thin wrapper for console_scripts
    app()


__all__ = ["app", "main"]
