"""
Operator CLI for evaluation datasets and the judge.

Commands:
    datasets create --name NAME --operation OP [--description D] [--created-by U] [--tag T ...]
    datasets list [--operation OP] [--created-by U] [--tag T ...] [--limit N] [--offset N]
    datasets show DATASET_ID
    datasets add-example DATASET_ID FILE      (FILE is a JSON example, "-" reads stdin)
    judge evaluate --operation OP --output FILE [--reference FILE] [--rubric-version V] [--cot]
    judge evaluate --dataset DATASET_ID [--rubric-version V] [--concurrency N]
    judge evaluate --interaction INTERACTION_ID [--rubric-version V]
    judge models
    judge rubrics

Configuration comes from the environment (see caseai.core.config).
Output is JSON on stdout; errors are logged and exit with status 1.
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from caseai.container import ServiceContainer, build_container
from caseai.core.config import Settings, load_settings
from caseai.core.errors import CaseAIError, NotFoundError, ValidationError
from caseai.core.logging import configure_logging, get_logger
from caseai.models.entities import AIOperation
from caseai.models.evaluation import CreateDatasetRequest, DatasetMetadataInput

logger = get_logger(__name__)


def _read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"Cannot read {path}: {e}") from e


def _read_json(path: str):
    try:
        return json.loads(_read_text(path))
    except json.JSONDecodeError as e:
        raise ValidationError(f"{path} is not valid JSON: {e}") from e


def _emit(value) -> None:
    if isinstance(value, list):
        data = [item.model_dump(mode="json", by_alias=True) if hasattr(item, "model_dump") else item for item in value]
        print(json.dumps(data, indent=2))
    elif hasattr(value, "model_dump_json"):
        print(value.model_dump_json(by_alias=True, indent=2))
    else:
        print(json.dumps(value, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage evaluation datasets and run the AI output judge")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL (default: from environment)")
    groups = parser.add_subparsers(dest="group", required=True)

    datasets = groups.add_parser("datasets", help="Evaluation datasets")
    ds_commands = datasets.add_subparsers(dest="command", required=True)

    create = ds_commands.add_parser("create", help="Create an empty dataset")
    create.add_argument("--name", required=True)
    create.add_argument("--operation", required=True, choices=[op.value for op in AIOperation])
    create.add_argument("--description", default=None)
    create.add_argument("--created-by", default="system")
    create.add_argument("--tag", action="append", default=[], dest="tags")

    list_cmd = ds_commands.add_parser("list", help="List datasets")
    list_cmd.add_argument("--operation", choices=[op.value for op in AIOperation], default=None)
    list_cmd.add_argument("--created-by", default=None)
    list_cmd.add_argument("--tag", action="append", default=[], dest="tags")
    list_cmd.add_argument("--limit", type=int, default=None)
    list_cmd.add_argument("--offset", type=int, default=None)

    show = ds_commands.add_parser("show", help="Show a dataset with its examples")
    show.add_argument("dataset_id")

    add_example = ds_commands.add_parser("add-example", help="Append an example from a JSON file")
    add_example.add_argument("dataset_id")
    add_example.add_argument("file", help='JSON example ("-" for stdin)')

    judge = groups.add_parser("judge", help="LLM-as-a-judge evaluation")
    judge_commands = judge.add_subparsers(dest="command", required=True)

    evaluate = judge_commands.add_parser("evaluate", help="Judge an output, a stored interaction or a dataset")
    target = evaluate.add_mutually_exclusive_group(required=True)
    target.add_argument("--output", help='File holding the produced output ("-" for stdin)')
    target.add_argument("--dataset", help="Judge every example of this dataset")
    target.add_argument("--interaction", help="Judge a stored AI interaction")
    evaluate.add_argument("--operation", choices=[op.value for op in AIOperation], default=None)
    evaluate.add_argument("--reference", default=None, help="File holding the reference context")
    evaluate.add_argument("--rubric-version", default=None)
    evaluate.add_argument("--concurrency", type=int, default=None)
    evaluate.add_argument("--cot", action="store_true", help="Ask the judge for per-criterion reasoning")

    judge_commands.add_parser("models", help="List judge-capable provider models")
    judge_commands.add_parser("rubrics", help="List rubric versions and their criteria")
    return parser


async def run_command(args: argparse.Namespace, container: ServiceContainer):
    """Execute one parsed command and return its result."""
    if args.group == "datasets":
        manager = container.datasets
        if args.command == "create":
            return await manager.create_dataset(
                CreateDatasetRequest(
                    name=args.name,
                    description=args.description,
                    operation=args.operation,
                    metadata=DatasetMetadataInput(created_by=args.created_by, tags=args.tags),
                )
            )
        if args.command == "list":
            return await manager.list_datasets(
                operation=args.operation,
                created_by=args.created_by,
                tags=args.tags,
                limit=args.limit,
                offset=args.offset,
            )
        if args.command == "show":
            dataset = await manager.get_dataset(args.dataset_id)
            if dataset is None:
                raise NotFoundError("Dataset", args.dataset_id)
            return dataset
        if args.command == "add-example":
            return await manager.add_example_to_dataset(args.dataset_id, _read_json(args.file))

    judge = container.judge
    if args.command == "evaluate":
        if args.dataset:
            return await judge.evaluate_dataset(
                args.dataset,
                rubric_version=args.rubric_version,
                concurrency=args.concurrency,
                chain_of_thought=args.cot,
            )
        if args.interaction:
            return await judge.evaluate_interaction(
                args.interaction, rubric_version=args.rubric_version, chain_of_thought=args.cot
            )
        if args.operation is None:
            raise ValidationError("--operation is required with --output")
        reference = _read_text(args.reference) if args.reference else None
        return await judge.evaluate_output(
            args.operation,
            _read_text(args.output),
            args.rubric_version,
            reference,
            chain_of_thought=args.cot,
        )
    if args.command == "models":
        return await judge.get_available_evaluation_models()
    if args.command == "rubrics":
        return [
            {"version": version, "criteria": criteria} for version, criteria in container.rubrics.describe()
        ]
    raise ValidationError(f"Unknown command: {args.group} {args.command}")


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    container = await build_container(settings)
    try:
        result = await run_command(args, container)
    except CaseAIError as e:
        logger.error("cli_command_failed", group=args.group, command=args.command, code=e.code, error=e.message)
        return 1
    finally:
        await container.close()
    _emit(result)
    return 0


def main(argv: Optional[List[str]] = None, settings: Optional[Settings] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or load_settings()
    configure_logging(log_level=args.log_level or settings.log_level, json_output=False)
    return asyncio.run(_run(args, settings))


if __name__ == "__main__":
    sys.exit(main())
