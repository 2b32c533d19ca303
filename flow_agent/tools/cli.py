"""
Flow Agent CLI Interface

Command-line access to validation, deterministic repair, segment assembly
and the refinement loop.
"""

import asyncio
import json
import logging
import sys
from typing import List, Optional

import click

from flow_agent.agent.collaborators import ErrorLearningStore, HttpSemanticValidator, LLMRepairer
from flow_agent.agent.config import RefinementConfig, ServiceConfig
from flow_agent.agent.error_handler import AuthenticationError, ConvergenceError, ExternalServiceError
from flow_agent.agent.orchestrator import RefinementOrchestrator
from flow_agent.core.llm_client import LLMClientFactory
from flow_agent.core.observability import LogLevel, ObservabilityConfig, ObservabilityManager
from flow_agent.models.diagnostics import ValidationLevel
from flow_agent.stages.codec import serialize_document
from flow_agent.tools.allocator import NodeAllocator
from flow_agent.tools.repair import RepairEngine
from flow_agent.tools.validation import StructuralValidator

logger = logging.getLogger(__name__)


@click.group()
@click.option("--verbose/--quiet", default=False, help="Verbose logging output")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
def cli(verbose: bool, json_logs: bool):
    """Flow Agent CLI - validate, repair and refine conversational flow documents."""
    ObservabilityManager.initialize(
        ObservabilityConfig(
            service_name="flow-agent-cli",
            log_level=LogLevel.DEBUG if verbose else LogLevel.WARNING,
            json_logs=json_logs,
        )
    )
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)


@cli.command()
@click.argument("flow_file", type=click.Path(exists=True))
@click.option("--format", type=click.Choice(["text", "json"]), default="text", help="Output format")
@click.option("--segment", is_flag=True, help="Document is a single flow segment; skip system-node checks")
def validate(flow_file: str, format: str, segment: bool) -> None:
    """
    Report structural diagnostics for a flow document.

    Exits with status 1 when error-level diagnostics are found.

    \b
    Examples:
        flow-agent validate flow.csv
        flow-agent validate flow.csv --format json
    """
    text = _read(flow_file)
    report = StructuralValidator(require_system_nodes=not segment).validate_text(text)

    if format == "json":
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        click.echo(f"File: {flow_file}")
        click.echo(f"Records: {len(report.records)} (dropped {len(report.malformed)})")
        for diagnostic in report.diagnostics:
            where = f"node {diagnostic.node_id}" if diagnostic.node_id is not None else f"line {diagnostic.line}"
            field = f" [{diagnostic.field}]" if diagnostic.field else ""
            click.echo(f"{diagnostic.level.value.upper():7} {where}{field}: {diagnostic.message}")
        click.echo(f"Valid: {report.is_valid}")

    if any(d.level == ValidationLevel.ERROR for d in report.diagnostics):
        sys.exit(1)


@cli.command()
@click.argument("flow_file", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(), help="Write the repaired document here")
@click.option("--segment", is_flag=True, help="Document is a single flow segment; skip system-node checks")
@click.option("--max-passes", default=4, show_default=True, help="Validate/repair passes")
def repair(flow_file: str, output: Optional[str], segment: bool, max_passes: int) -> None:
    """
    Apply deterministic repairs and print the fix log.

    \b
    Examples:
        flow-agent repair flow.csv -o fixed.csv
    """
    engine = RepairEngine(StructuralValidator(require_system_nodes=not segment), max_passes=max_passes)
    result = engine.run(_read(flow_file))

    for line in result.fix_log:
        click.echo(f"fix: {line}", err=True)
    remaining = [d for d in result.remaining if d.level == ValidationLevel.ERROR]
    click.echo(f"{len(result.fix_log)} fixes, {len(remaining)} errors remaining", err=True)
    _write(result.text, output)


@cli.command()
@click.argument("segment_files", nargs=-1, required=True, type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(), help="Write the assembled document here")
def remap(segment_files: List[str], output: Optional[str]) -> None:
    """
    Assemble flow segments, renumbering colliding node ids.

    Segments are placed in argument order; segment N owns flow band N.

    \b
    Examples:
        flow-agent remap billing.csv support.csv -o combined.csv
    """
    validator = StructuralValidator(require_system_nodes=False)
    segments = [list(validator.validate_text(_read(path)).document.records) for path in segment_files]
    assembly = NodeAllocator().assemble_segments(segments)

    for index, mapping in assembly.mappings.items():
        if mapping:
            click.echo(f"segment {index}: {json.dumps({str(k): v for k, v in mapping.items()})}", err=True)
    for warning in assembly.warnings:
        click.echo(f"warning: {warning}", err=True)
    _write(serialize_document(assembly.document), output)


@cli.command()
@click.argument("flow_file", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(), help="Write the refined document here")
@click.option("--validator-url", envvar="FLOW_VALIDATOR_URL", required=True, help="Semantic validator endpoint")
@click.option("--token", envvar="FLOW_VALIDATOR_TOKEN", default=None, help="Validator session token")
@click.option("--bot-id", envvar="FLOW_BOT_ID", default=None, help="Bot identifier sent to the validator")
@click.option("--max-iterations", type=int, default=None, help="Override FLOW_MAX_ITERATIONS")
@click.option("--no-ai", is_flag=True, help="Use rule-based fixes only")
@click.option("--json-output", is_flag=True, help="Print the full result as JSON")
def refine(
    flow_file: str,
    output: Optional[str],
    validator_url: str,
    token: Optional[str],
    bot_id: Optional[str],
    max_iterations: Optional[int],
    no_ai: bool,
    json_output: bool,
) -> None:
    """
    Run the refinement loop against the semantic validator.

    \b
    Examples:
        flow-agent refine flow.csv --validator-url https://validator/api -o accepted.csv
    """
    config = RefinementConfig.from_env()
    if max_iterations is not None:
        config.max_iterations = max_iterations
    services = ServiceConfig.from_env()

    try:
        result = asyncio.run(
            _run_refinement(_read(flow_file), config, services, validator_url, token, bot_id, no_ai)
        )
    except AuthenticationError as e:
        click.echo(f"Authentication failed: {e}", err=True)
        sys.exit(2)
    except ExternalServiceError as e:
        click.echo(f"Validator unavailable: {e}", err=True)
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        click.echo(f"Valid: {result.valid} after {result.iterations} iterations", err=True)
        for error in result.remaining_errors:
            click.echo(f"remaining: {error.describe()}", err=True)
        _write(result.document_text, output)

    try:
        result.raise_for_status()
    except ConvergenceError as e:
        click.echo(str(e), err=True)
        sys.exit(1)


async def _run_refinement(text, config, services, validator_url, token, bot_id, no_ai):
    validator = HttpSemanticValidator(validator_url, token=token, bot_id=bot_id, timeout=config.validator_timeout)
    repairer = None if no_ai else LLMRepairer(LLMClientFactory.create(services.llm_config))
    store = ErrorLearningStore(services.learning_store_url, services.learning_store_token)
    orchestrator = RefinementOrchestrator(validator, repairer, store, config)
    try:
        return await orchestrator.refine(text)
    finally:
        await validator.close()
        await store.close()
        if repairer is not None:
            await repairer.close()


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
def serve(host: str, port: int) -> None:
    """Start the HTTP API."""
    import uvicorn

    uvicorn.run("flow_agent.api.app:app", host=host, port=port)


@cli.command()
def info() -> None:
    """Show version and configuration information."""
    from flow_agent import __version__

    config = RefinementConfig.from_env()
    click.echo(
        json.dumps(
            {
                "name": "Flow Agent",
                "version": __version__,
                "description": "Validate, repair and refine conversational flow documents",
                "refinement": {
                    "max_iterations": config.max_iterations,
                    "stuck_threshold": config.stuck_threshold,
                    "concurrency": config.concurrency,
                },
            },
            indent=2,
        )
    )


# ==================
# Helper Functions
# ==================


def _read(path: str) -> str:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()
    except IOError as e:
        click.echo(f"Error reading input file: {e}", err=True)
        sys.exit(1)


def _write(text: str, output_file: Optional[str]) -> None:
    if output_file:
        with open(output_file, "w", encoding="utf-8") as f:
            f.write(text + "\n")
        click.echo(f"Written to: {output_file}", err=True)
    else:
        click.echo(text)


if __name__ == "__main__":
    cli()
