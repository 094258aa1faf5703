"""Typer-powered command line for ``samlconf``.

Each command loads the layered configuration, runs inside a structured
operation log entry and maps its outcome onto :class:`ExitCode`. The form is
rendered through the same reconciler the web handler uses, so ``show`` and
``apply`` exercise exactly the validation path an administrator would hit.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import httpx
import typer
import yaml
from rich.console import Console
from rich.table import Table

from . import __version__
from .certificates import CertificateLogic, parse_certificate
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .feed import FeedError, VersionFeed
from .findings import Finding, FindingCode, Severity
from .logging import OperationScope, StructuredLogger
from .reconciler import Commit, ConfigReconciler, FormRender
from .templates import FORM_TEMPLATE, TemplateEngine, TemplateRenderError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to samlconf's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)

_SEVERITY_STYLE = {
    Severity.INFO: "[cyan]INFO[/cyan]",
    Severity.WARNING: "[yellow]WARN[/yellow]",
    Severity.FATAL: "[red]FATAL[/red]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        SAML single sign-on configuration admin CLI.

        Render the configuration form, validate and apply changes to the stored
        record, inspect certificates and check the release feed for updates.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine
    reconciler: ConfigReconciler
    http_client: httpx.Client | None = None


def build_runtime(config: AppConfig, *, http_client: httpx.Client | None = None) -> RuntimeContext:
    """Wire the collaborators described by *config*."""
    return RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine.with_overrides(config.templates_dir),
        reconciler=ConfigReconciler.from_config(config, client=http_client),
        http_client=http_client,
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc
    runtime = build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the samlconf version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"samlconf {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _exit_code_for(findings: Sequence[Finding]) -> ExitCode:
    codes = {finding.code for finding in findings}
    if FindingCode.STORE_UNAVAILABLE in codes or FindingCode.PERSIST_FAILED in codes:
        return ExitCode.ENVIRONMENT
    if any(finding.severity.blocks_commit for finding in findings):
        return ExitCode.VALIDATION
    return ExitCode.OK


def _render_findings(findings: Sequence[Finding]) -> None:
    if not findings:
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Severity")
    table.add_column("Field")
    table.add_column("Code")
    table.add_column("Message")
    for finding in findings:
        table.add_row(
            _SEVERITY_STYLE[finding.severity],
            finding.field or "(global)",
            finding.code.value,
            finding.message,
        )
    console.print(table)


def _finish_with_findings(
    op: OperationScope,
    findings: Sequence[Finding],
    message: str,
    *,
    changed: int = 0,
    context: Mapping[str, object] | None = None,
) -> None:
    rc = _exit_code_for(findings)
    messages = [finding.message for finding in findings]
    if rc is ExitCode.OK:
        if messages:
            op.warning(message, warnings=messages, changed=changed, context=context)
        else:
            op.success(message, changed=changed, context=context)
        return
    op.error(message, errors=messages, rc=int(rc), context=context)
    raise typer.Exit(code=int(rc))


def _form_payload(form: FormRender) -> dict[str, object]:
    return {
        "disabled": form.disabled,
        "may_commit": form.may_commit,
        "findings": [finding.to_dict() for finding in form.findings],
    }


@app.command()
def show(
    ctx: typer.Context,
    config_id: int | None = typer.Option(
        None,
        "--id",
        min=1,
        help="Configuration id to render (defaults to store.config_id).",
    ),
    output: Path | None = typer.Option(
        None,
        "--output",
        "-o",
        dir_okay=False,
        help="Write the rendered form to this file instead of stdout.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Render the configuration form for the stored record."""
    runtime = _get_runtime(ctx)
    resolved_id = config_id if config_id is not None else runtime.config.store.config_id
    with runtime.logger.operation(
        "show",
        args={"id": resolved_id, "output": output, "json": json_output},
        target={"kind": "config", "id": resolved_id},
    ) as op:
        form = runtime.reconciler.show(resolved_id)
        op.add_step(
            "reconciler.prepare",
            status="disabled" if form.disabled else "ok",
            detail=f"{len(form.findings)} finding(s)",
        )
        try:
            if output is not None:
                changed = runtime.templates.render_to_path(
                    FORM_TEMPLATE,
                    output,
                    runtime.templates.form_context(form.tokens, disabled=form.disabled),
                )
                op.add_step("templates.render", status="ok", detail=str(output))
            else:
                html = runtime.templates.render_form(form.tokens, disabled=form.disabled)
                changed = False
        except TemplateRenderError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        except OSError as exc:
            _command_error(op, f"Failed to write {output}: {exc}", rc=ExitCode.ENVIRONMENT)

        if json_output:
            payload = _form_payload(form)
            payload["config_id"] = resolved_id
            payload["output"] = str(output) if output is not None else None
            console.print_json(data=payload)
        elif output is None:
            typer.echo(html)
            _render_findings(form.findings)
        else:
            state = "written" if changed else "unchanged"
            console.print(f"[green]Form {state}:[/green] {output}")
            _render_findings(form.findings)

        _finish_with_findings(
            op,
            form.findings,
            f"Rendered configuration form for id {resolved_id}.",
            changed=int(changed),
        )


def _parse_assignments(op: OperationScope, assignments: Sequence[str]) -> dict[str, object]:
    values: dict[str, object] = {}
    for assignment in assignments:
        key, separator, value = assignment.partition("=")
        key = key.strip()
        if not separator or not key:
            _command_error(op, f"Invalid --set value {assignment!r}; expected KEY=VALUE.")
        values[key] = value
    return values


def _load_submission_file(op: OperationScope, path: Path) -> dict[str, object]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        _command_error(op, f"Failed to read {path}: {exc}", rc=ExitCode.ENVIRONMENT)
    except yaml.YAMLError as exc:
        _command_error(op, f"Failed to parse {path}: {exc}")
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        _command_error(op, f"{path} must contain a mapping of field names to values.")
    return {str(key): value for key, value in data.items()}


@app.command()
def apply(
    ctx: typer.Context,
    assignments: list[str] = typer.Option(
        [],
        "--set",
        metavar="KEY=VALUE",
        help="Field value to submit; repeat for several fields.",
    ),
    from_file: Path | None = typer.Option(
        None,
        "--from-file",
        exists=True,
        dir_okay=False,
        readable=True,
        help="YAML mapping of field names to submitted values.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Validate submitted values and persist them when nothing blocks."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "apply",
        args={"set": list(assignments), "from_file": from_file, "json": json_output},
        target={"kind": "config", "store": runtime.config.store.path},
    ) as op:
        submitted: dict[str, object] = {}
        if from_file is not None:
            submitted.update(_load_submission_file(op, from_file))
        submitted.update(_parse_assignments(op, assignments))
        if not submitted:
            _command_error(op, "Nothing to apply; pass --set KEY=VALUE or --from-file.")

        decision = runtime.reconciler.process(submitted)
        committed = isinstance(decision, Commit)
        op.add_step(
            "reconciler.process",
            status="committed" if committed else "redisplay",
            detail=f"{len(decision.findings)} finding(s)",
        )

        if json_output:
            payload: dict[str, object] = {
                "status": "committed" if committed else "redisplay",
                "findings": [finding.to_dict() for finding in decision.findings],
            }
            if isinstance(decision, Commit):
                payload["record"] = decision.record
            else:
                payload["disabled"] = decision.form.disabled
            console.print_json(data=payload)
        elif committed:
            console.print(f"[green]Configuration saved to {runtime.config.store.path}.[/green]")
            _render_findings(decision.findings)
        else:
            console.print("[yellow]Configuration not saved; resolve the findings below.[/yellow]")
            _render_findings(decision.findings)

        _finish_with_findings(
            op,
            decision.findings,
            "Applied configuration changes." if committed else "Configuration not saved.",
            changed=1 if committed else 0,
        )


cert_app = typer.Typer(help="Inspect certificate strings.")
config_app = typer.Typer(help="Inspect global configuration.")

app.add_typer(cert_app, name="cert")
app.add_typer(config_app, name="config")


@cert_app.command("inspect")
def cert_inspect(
    ctx: typer.Context,
    source: str = typer.Argument(
        ...,
        metavar="FILE|-",
        help="Certificate file to inspect, or '-' to read standard input.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Parse a certificate string the way the configuration form does."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "cert inspect",
        args={"source": source, "json": json_output},
        target={"kind": "certificate"},
    ) as op:
        if source == "-":
            raw = typer.get_text_stream("stdin").read()
        else:
            try:
                raw = Path(source).read_text(encoding="utf-8")
            except OSError as exc:
                _command_error(op, f"Failed to read {source}: {exc}", rc=ExitCode.ENVIRONMENT)

        result = parse_certificate(raw)
        if json_output:
            console.print_json(data=result.to_dict())
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Check", style="bold")
            table.add_column("Value")
            for key, value in result.flags.items():
                table.add_row(key, str(value))
            if result.details is not None:
                table.add_row("Common name", result.details.common_name or "-")
                table.add_row("Issuer organization", result.details.issuer_organization or "-")
                table.add_row("Issuer common name", result.details.issuer_common_name or "-")
                table.add_row("Valid from", result.valid_from or "-")
                table.add_row("Valid to", result.valid_to or "-")
                table.add_row("Days remaining", str(result.days_remaining))
            console.print(table)

        if not result.semantics_valid or result.logic_valid is CertificateLogic.INVALID:
            op.error(
                "Certificate could not be decoded.",
                errors=[json.dumps(result.flags)],
                rc=int(ExitCode.VALIDATION),
            )
            raise typer.Exit(code=int(ExitCode.VALIDATION))
        if result.logic_valid is CertificateLogic.UNKNOWN:
            op.warning(
                "Certificate algorithm not supported by the crypto backend.",
                warnings=["CERT_LOGIC_VALID=unknown"],
            )
            return
        op.success("Inspected certificate.", context={"days_remaining": result.days_remaining})


@app.command("version-check")
def version_check(
    ctx: typer.Context,
    compare: str | None = typer.Option(
        None,
        "--compare",
        help="Version to compare against (defaults to the running version).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Compare a version with the newest release in the feed."""
    runtime = _get_runtime(ctx)
    feed_config = runtime.config.feed
    running = compare or __version__
    with runtime.logger.operation(
        "version-check",
        args={"compare": running, "json": json_output},
        target={"kind": "feed", "url": feed_config.url},
    ) as op:
        feed = VersionFeed(
            feed_config.url,
            timeout=feed_config.timeout,
            client=runtime.http_client,
        )
        try:
            check = feed.check(running)
        except FeedError as exc:
            _command_error(op, str(exc), rc=ExitCode.PROVIDER)

        if json_output:
            console.print_json(data=check.to_dict())
        elif check.latest:
            console.print(
                f"[yellow]Version {check.git_version} is available[/yellow] "
                f"(running {check.compare}): {check.git_url}"
            )
        else:
            console.print(f"[green]Version {check.compare} is the latest release.[/green]")
        op.success("Checked release feed.", context=check.to_dict())


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "build_runtime", "main"]
