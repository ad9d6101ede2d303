"""Command-line interface for the MOK kernel module signing tool."""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import SignerConfig, generate_default_config, load_config
from .dkms import resign as resign_modules
from .enroll import POST_REBOOT_STEPS, EnrollmentRequester
from .errors import SignerError
from .keys import KeyMaterial
from .runner import SystemRunner
from .signing import SigningReport, SigningStatus
from .tools import ToolResolver
from .workflow import RunSummary, SigningWorkflow, require_root

console = Console()


class ConsoleReporter:
    """Status-coded console output."""

    def __init__(self, console: Console) -> None:
        self.console = console

    def info(self, message: str) -> None:
        self.console.print(f"[bold blue]\\[INFO][/bold blue] {escape(message)}", highlight=False)

    def success(self, message: str) -> None:
        self.console.print(f"[bold green]✓[/bold green] {escape(message)}", highlight=False)

    def warning(self, message: str) -> None:
        self.console.print(f"[bold yellow]Warning:[/bold yellow] {escape(message)}", highlight=False)

    def error(self, message: str) -> None:
        self.console.print(f"[bold red]✗[/bold red] {escape(message)}", highlight=False)


def setup_logging(verbose: bool) -> None:
    """Route package logging through rich."""
    logger = logging.getLogger("mok_sign")
    logger.handlers.clear()
    handler = RichHandler(console=Console(stderr=True), show_path=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False


def fail(error: SignerError) -> None:
    """Print a fatal error with its remediation hints and exit 1."""
    console.print(f"[bold red]Error:[/bold red] {escape(str(error))}")
    for hint in error.hints:
        console.print(f"  [red]{escape(hint)}[/red]")
    sys.exit(1)


def confirm_reuse(material: KeyMaterial) -> bool:
    """Ask the operator whether existing MOK keys should be kept."""
    console.print(
        f"[bold yellow]Warning:[/bold yellow] MOK keys already exist at {material.directory}"
    )
    return click.confirm("Do you want to use existing keys?", default=True)


def render_report(report: SigningReport) -> Table:
    """Per-module signing results as a table."""
    table = Table(title="Module Signing Results")
    table.add_column("Module", style="cyan")
    table.add_column("Status")
    table.add_column("Details")

    styles = {
        SigningStatus.SIGNED: "[green]✓ SIGNED[/green]",
        SigningStatus.FAILED: "[red]✗ FAILED[/red]",
        SigningStatus.SKIPPED: "[yellow]- SKIPPED[/yellow]",
    }
    for outcome in report.outcomes:
        table.add_row(str(outcome.module.path), styles[outcome.status], escape(outcome.message))
    return table


def secure_boot_label(state: Optional[bool]) -> str:
    return {True: "enabled", False: "disabled", None: "unknown"}[state]


def render_summary(summary: RunSummary) -> None:
    """Final summary and next steps."""
    report = summary.report

    console.print(render_report(report))
    console.rule("[bold green]Secure Boot signing process complete[/bold green]")

    table = Table(title="Summary", show_header=False)
    table.add_column("Item", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Driver version", summary.driver_version)
    table.add_row("Kernel version", summary.kernel_version)
    table.add_row("Secure Boot", secure_boot_label(summary.secure_boot))
    table.add_row("Modules signed", f"{report.signed}/{report.total}")
    table.add_row("MOK keys", "generated" if summary.keys_generated else "reused")
    table.add_row("sign-file", str(summary.sign_tool))
    table.add_row("DKMS signing", summary.dkms_status.value.replace("_", " "))
    table.add_row("Enrollment", summary.enrollment.status.value.replace("_", " "))
    table.add_row("Re-sign helper", str(summary.helper_path))
    console.print(table)

    if summary.warnings:
        console.print("[bold yellow]Setup warnings:[/bold yellow]")
        for warning in summary.warnings:
            console.print(f"  - {escape(warning)}", highlight=False)

    if report.failed:
        console.print(
            f"[bold yellow]Warning:[/bold yellow] {report.failed} module(s) failed to sign"
        )

    if summary.enrollment.needs_reboot:
        console.print(
            "[bold yellow]IMPORTANT:[/bold yellow] On next reboot, you will see a blue MOK Manager screen"
        )
        for number, step in enumerate(POST_REBOOT_STEPS, start=1):
            console.print(f"  {number}. {step}")

    console.print("\n[bold blue]Next steps:[/bold blue]")
    console.print("  1. Reboot your system: sudo reboot")
    console.print("  2. During boot, enroll the MOK key in the blue MOK Manager screen")
    console.print("  3. After enrolling, enable Secure Boot in BIOS/UEFI")
    console.print("  4. Verify: mokutil --sb-state")
    console.print("\nTo verify modules are signed:")
    console.print("  modinfo nvidia | grep sig_id")
    console.print("\nAfter driver updates, re-sign modules with:")
    console.print(f"  sudo {summary.helper_path}")


@click.group(invoke_without_command=True)
@click.version_option(version="0.1.0", prog_name="mok-sign")
@click.option("--config", "-c", type=click.Path(exists=True), help="Configuration file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def main(ctx: click.Context, config: Optional[str], verbose: bool) -> None:
    """Kernel module signing for UEFI Secure Boot.

    Signs the installed driver's kernel modules with a Machine Owner Key,
    configures DKMS to sign future rebuilds and queues the key for
    enrollment. Without a subcommand the full signing pass runs.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    setup_logging(verbose)

    if config:
        try:
            ctx.obj["config"] = load_config(Path(config))
            ctx.obj["config_path"] = Path(config)
        except (ValueError, ValidationError, yaml.YAMLError) as e:
            console.print(f"[bold red]Error:[/bold red] Invalid configuration: {escape(str(e))}")
            sys.exit(1)
    else:
        ctx.obj.setdefault("config", SignerConfig())

    ctx.obj.setdefault("runner", SystemRunner())
    ctx.obj.setdefault("geteuid", os.geteuid)

    if ctx.invoked_subcommand is None:
        ctx.invoke(run)


@main.command()
@click.option("--strict", is_flag=True, help="Exit with status 1 if any module is left unsigned")
@click.option("--skip-install", is_flag=True, help="Do not install prerequisite packages")
@click.pass_context
def run(ctx: click.Context, strict: bool, skip_install: bool) -> None:
    """Sign the driver's modules and enroll the signing key."""
    config: SignerConfig = ctx.obj["config"]
    strict = strict or config.signing.strict

    console.print("[bold blue]Secure Boot Module Signing[/bold blue]")
    console.rule()

    workflow = SigningWorkflow(
        config,
        ctx.obj["runner"],
        reporter=ConsoleReporter(console),
        confirm_reuse=confirm_reuse,
        geteuid=ctx.obj["geteuid"],
        config_path=ctx.obj.get("config_path"),
    )

    try:
        summary = workflow.run(skip_install=skip_install)
    except SignerError as e:
        fail(e)

    render_summary(summary)

    if strict and not summary.report.all_signed:
        console.print("[bold red]✗[/bold red] Not every module was signed (strict mode)")
        sys.exit(1)


@main.command()
@click.option("--key", "key_path", type=click.Path(exists=True), help="MOK private key")
@click.option("--cert", "cert_path", type=click.Path(exists=True), help="MOK certificate (DER)")
@click.option("--pattern", "-p", help="Module file name glob")
@click.option("--kernel", "-k", help="Kernel release (defaults to the running kernel)")
@click.pass_context
def resign(
    ctx: click.Context,
    key_path: Optional[str],
    cert_path: Optional[str],
    pattern: Optional[str],
    kernel: Optional[str],
) -> None:
    """Re-sign the driver's modules with the existing MOK keys."""
    config: SignerConfig = ctx.obj["config"]
    if kernel:
        config.kernel_version = kernel

    material = KeyMaterial.in_directory(config.paths.mok_dir)
    if key_path:
        material.private_key = Path(key_path)
    if cert_path:
        material.der_certificate = Path(cert_path)

    try:
        require_root(ctx.obj["geteuid"])
        if not material.exists():
            raise SignerError(
                f"MOK keys not found in {material.directory}",
                hints=["Run mok-sign first to generate and enroll a key"],
            )
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            task = progress.add_task("Re-signing kernel modules...", total=1)
            report = resign_modules(config, material, ctx.obj["runner"], pattern)
            progress.update(task, completed=1)
    except SignerError as e:
        fail(e)

    for outcome in report.outcomes:
        console.print(f"Processing: {outcome.module.path}")
        if not outcome.signed:
            console.print(f"  [red]{outcome.status.value}: {escape(outcome.message)}[/red]")

    console.print(f"Re-signing complete! ({report.signed}/{report.total} signed)", highlight=False)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show Secure Boot, key and enrollment state."""
    config: SignerConfig = ctx.obj["config"]
    runner = ctx.obj["runner"]

    material = KeyMaterial.in_directory(config.paths.mok_dir)
    enroller = EnrollmentRequester(runner, config.keys.enrollment_marker)
    secure_boot = enroller.secure_boot_enabled()
    sign_tool = ToolResolver(config).find()

    table = Table(title="Secure Boot Signing Status")
    table.add_column("Check", style="cyan")
    table.add_column("Value")

    table.add_row("Secure Boot", secure_boot_label(secure_boot))
    table.add_row("Kernel", config.resolved_kernel())
    table.add_row("MOK keys", str(material.directory) if material.exists() else "missing")
    if material.exists():
        table.add_row("Fingerprint", material.fingerprint())
        table.add_row(
            "Enrolled",
            "yes" if enroller.is_enrolled(material) else "no",
        )
    table.add_row("sign-file", str(sign_tool) if sign_tool else "not found")
    console.print(table)


@main.command()
@click.option("--output", "-o", type=click.Path(), required=True, help="Output file path")
@click.option("--format", "fmt", type=click.Choice(["yaml", "json"]), default="yaml", help="Output format")
def init_config(output: str, fmt: str) -> None:
    """Generate a default configuration file."""
    output_path = Path(output)
    config_content = generate_default_config(fmt)

    with open(output_path, "w") as f:
        f.write(config_content)

    console.print(f"[bold green]✓[/bold green] Configuration file created at {output_path}")


if __name__ == "__main__":
    main()
