"""Command Line Interface for Clinical Import.

This module provides a Typer CLI for importing clinical files into the
canonical patient/visit/observation structure, analyzing files before import
and validating single values against the rule engine.

Security Impact:
    - Files are size-checked before they are parsed
    - Imports never write anywhere unless --output is given
"""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from clinical_import import __version__
from clinical_import.adapters.repositories import load_seed_file
from clinical_import.domain.import_structure import ImportOptions, ImportStructure
from clinical_import.domain.ports import ConfigurationError
from clinical_import.infrastructure.logging_config import get_logger, setup_logging
from clinical_import.infrastructure.settings import settings
from clinical_import.services.format_detector import get_format_info
from clinical_import.services.import_service import ImportService
from clinical_import.validators.data_validator import DataValidator

# Initialize Typer app and Rich console
app = typer.Typer(
    name="clinical-import",
    help="Clinical Import: CSV, JSON, HL7 and HTML survey import into a dimensional clinical model",
    add_completion=False
)
console = Console()
logger = get_logger(__name__)


def _load_repositories(seed_file: Optional[Path]):
    path = seed_file or (Path(settings.seed_file) if settings.seed_file else None)
    if path is None:
        return None, None
    try:
        concepts, rules = load_seed_file(path)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]✗[/red] Failed to load seed data: {str(e)}")
        raise typer.Exit(code=1)
    logger.info(f"Loaded {len(concepts)} concepts and {len(rules)} rules from {path}")
    return concepts, rules


def create_import_service(seed_file: Optional[Path] = None) -> ImportService:
    """Create an ImportService from the environment configuration and optional seed data."""
    try:
        config = settings.import_config
    except ConfigurationError as e:
        console.print(f"[red]✗[/red] {str(e)}")
        raise typer.Exit(code=1)

    concepts, rules = _load_repositories(seed_file)
    validator = DataValidator(rule_repository=rules)
    return ImportService(config=config, concept_repository=concepts, validator=validator)


def _read_file(input_file: Path) -> str:
    try:
        return input_file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        console.print(f"[red]✗[/red] Cannot read {input_file}: {str(e)}")
        raise typer.Exit(code=1)


def _print_issues(title: str, issues, style: str) -> None:
    if not issues:
        return
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Code", style=style)
    table.add_column("Message")
    table.add_column("Field", style="dim")
    for issue in issues:
        table.add_row(issue.code, issue.message, issue.field or "")
    console.print(table)


def _print_import_summary(result: ImportStructure) -> None:
    summary_table = Table(show_header=False, box=None, padding=(0, 2))
    summary_table.add_row("Status:", "[green]success[/green]" if result.success else "[red]failed[/red]")
    if result.data is not None:
        for name, count in result.data.counts().items():
            summary_table.add_row(f"{name.capitalize()}:", f"[bold]{count:,}[/bold]")
    summary_table.add_row("Errors:", str(len(result.errors)))
    summary_table.add_row("Warnings:", str(len(result.warnings)))
    if "format" in result.metadata:
        summary_table.add_row("Format:", str(result.metadata["format"]))
    console.print(summary_table)


@app.command("import")
def import_command(
    input_file: Path = typer.Argument(..., help="Input file path (CSV, JSON, HL7 JSON or HTML)", exists=True, dir_okay=False),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", min=0, help="Maximum number of observations to keep"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the full import result as JSON"),
    seed_file: Optional[Path] = typer.Option(None, "--seed", "-s", help="Concept/rule seed file (JSON)"),
    patient_num: Optional[int] = typer.Option(None, "--patient-num", min=1, help="Bind all observations to this patient"),
    encounter_num: Optional[int] = typer.Option(None, "--encounter-num", min=1, help="Bind all observations to this visit"),
) -> None:
    """Import a clinical file and print a summary.

    Examples:
        clinical-import import data/export.csv
        clinical-import import data/discharge.json --output result.json
        clinical-import import data/survey.html --patient-num 42 --encounter-num 7
    """
    if encounter_num is not None and patient_num is None:
        console.print("[red]✗[/red] --encounter-num requires --patient-num")
        raise typer.Exit(code=1)

    content = _read_file(input_file)
    service = create_import_service(seed_file)
    options = ImportOptions(limit=limit)

    console.print(f"\n[bold blue]Clinical Import[/bold blue]")
    console.print(f"[dim]Input file:[/dim] {input_file}")
    console.print()

    with console.status("[bold green]Importing..."):
        if patient_num is not None:
            result = service.import_for_patient(content, input_file.name, patient_num, encounter_num, options)
        else:
            result = service.import_file(content, input_file.name, options)

    _print_import_summary(result)
    _print_issues("Errors", result.errors, "red")
    _print_issues("Warnings", result.warnings, "yellow")

    if output is not None:
        output.write_text(result.model_dump_json(indent=2), encoding="utf-8")
        console.print(f"\n[green]✓[/green] Result written to {output}")

    if not result.success:
        console.print(f"\n[red]✗[/red] Import failed with {len(result.errors)} error(s)")
        raise typer.Exit(code=1)
    console.print(f"\n[green]✓[/green] Import completed successfully")


@app.command()
def analyze(
    input_file: Path = typer.Argument(..., help="File to analyze", exists=True, dir_okay=False),
) -> None:
    """Detect the format of a file and run the pre-import checks without importing it."""
    content = _read_file(input_file)
    analysis = create_import_service().analyze_file(content, input_file.name)

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("File:", str(input_file))
    info_table.add_row("Format:", analysis.format.value if analysis.format else "unknown")
    info_table.add_row("Size:", f"{analysis.size:,} characters")
    info_table.add_row("Estimated time:", f"{analysis.estimated_processing_time_ms} ms")
    info_table.add_row("Valid:", "[green]yes[/green]" if analysis.is_valid else "[red]no[/red]")
    if analysis.errors:
        info_table.add_row("Errors:", ", ".join(analysis.errors))
    console.print(info_table)

    if not analysis.is_valid:
        raise typer.Exit(code=1)


@app.command()
def validate(
    value: str = typer.Argument(..., help="Value to validate"),
    data_type: str = typer.Option("text", "--type", "-t", help="numeric, text, date, blob or boolean"),
    concept_code: Optional[str] = typer.Option(None, "--concept", "-c", help="Concept whose rules apply"),
    field: Optional[str] = typer.Option(None, "--field", "-f", help="Field name for plausibility checks (e.g. HEART_RATE)"),
    seed_file: Optional[Path] = typer.Option(None, "--seed", "-s", help="Concept/rule seed file (JSON)"),
) -> None:
    """Validate a single value against the standard and concept rules.

    Numeric values are passed to the validator as numbers and boolean values
    as true/false; everything else is validated as given.

    Examples:
        clinical-import validate 72 --type numeric --field HEART_RATE
        clinical-import validate 2024-02-30 --type date
    """
    typed_value: object = value
    if data_type == "numeric":
        try:
            typed_value = float(value) if any(c in value for c in ".eE") else int(value)
        except ValueError:
            typed_value = value
    elif data_type == "boolean" and value.lower() in ("true", "false"):
        typed_value = value.lower() == "true"

    _, rules = _load_repositories(seed_file)
    validator = DataValidator(rule_repository=rules)
    result = validator.validate_data(
        typed_value,
        data_type,
        concept_code=concept_code,
        metadata={"field": field} if field else None,
    )

    _print_issues("Errors", result.errors, "red")
    _print_issues("Warnings", result.warnings, "yellow")
    if not result.is_valid:
        console.print(f"[red]✗[/red] Invalid value: {value}")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] Valid {data_type} value: {value}")


@app.command()
def formats() -> None:
    """List the import formats enabled in the current configuration."""
    service = create_import_service()

    table = Table(show_header=True, header_style="bold")
    table.add_column("Format", style="cyan")
    table.add_column("Name")
    table.add_column("Extensions")
    table.add_column("Description", style="dim")
    for name in service.get_supported_formats():
        format_info = get_format_info(name)
        table.add_row(name, format_info["name"], ", ".join(format_info["extensions"]), format_info["description"])
    console.print(table)


@app.command()
def info() -> None:
    """Display application information and import configuration."""
    config = create_import_service().config

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Version:", __version__)
    info_table.add_row("Max File Size:", str(config.max_file_size))
    info_table.add_row("Validation Level:", config.validation_level)
    info_table.add_row("Duplicate Handling:", config.duplicate_handling)
    info_table.add_row("Batch Size:", str(config.batch_size))
    info_table.add_row("Transaction Mode:", config.transaction_mode)
    info_table.add_row("Seed File:", settings.seed_file or "none")
    console.print(info_table)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    version: bool = typer.Option(False, "--version", help="Show version information"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Clinical Import: CSV, JSON, HL7 and HTML survey import."""
    if version:
        console.print(f"clinical-import v{__version__}")
        raise typer.Exit()
    setup_logging(use_json=settings.log_json, log_level="DEBUG" if verbose else settings.log_level)
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


if __name__ == "__main__":
    app()
