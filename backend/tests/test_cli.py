"""
Tests for the evaluation operator CLI.

Each invocation builds its own container, so the tests point it at a file-backed
SQLite database that outlives a single command.
"""
import json

import pytest

from scripts.evaluation_cli import build_parser, main


@pytest.fixture
def cli_settings(settings, tmp_path):
    return settings.model_copy(update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"})


def run(capsys, cli_settings, *argv):
    code = main(list(argv), settings=cli_settings)
    out = capsys.readouterr().out
    return code, (json.loads(out) if code == 0 else None)


def test_dataset_commands(capsys, cli_settings, tmp_path):
    code, created = run(
        capsys, cli_settings, "datasets", "create", "--name", "CLI set", "--operation", "generate_summary", "--tag", "cli"
    )
    assert code == 0
    assert created["metadata"]["tags"] == ["cli"]

    example_file = tmp_path / "example.json"
    example_file.write_text(
        json.dumps(
            {
                "input": {"prompt": "Summarize"},
                "expectedOutput": {
                    "content": "A summary",
                    "quality": 7,
                    "criteria": {"faithfulness": 7, "completeness": 7, "relevance": 7, "clarity": 7},
                },
            }
        )
    )
    code, example = run(capsys, cli_settings, "datasets", "add-example", created["id"], str(example_file))
    assert code == 0
    assert example["datasetId"] == created["id"]

    code, shown = run(capsys, cli_settings, "datasets", "show", created["id"])
    assert code == 0
    assert shown["statistics"]["totalExamples"] == 1
    assert shown["statistics"]["averageQuality"] == 7.0

    code, listed = run(capsys, cli_settings, "datasets", "list", "--tag", "cli")
    assert code == 0
    assert [dataset["id"] for dataset in listed] == [created["id"]]


def test_show_unknown_dataset_fails(capsys, cli_settings):
    code, _ = run(capsys, cli_settings, "datasets", "show", "missing")
    assert code == 1


def test_bad_example_file_fails(capsys, cli_settings, tmp_path):
    _, created = run(capsys, cli_settings, "datasets", "create", "--name", "x", "--operation", "generate_summary")
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")

    code, _ = run(capsys, cli_settings, "datasets", "add-example", created["id"], str(broken))

    assert code == 1


def test_rubrics(capsys, cli_settings):
    code, rubrics = run(capsys, cli_settings, "judge", "rubrics")
    assert code == 0
    versions = {rubric["version"]: rubric["criteria"] for rubric in rubrics}
    assert versions["1.0"] == ["faithfulness", "completeness", "relevance", "clarity"]


def test_evaluate_output_requires_operation(capsys, cli_settings, tmp_path):
    output = tmp_path / "output.txt"
    output.write_text("A summary")

    code, _ = run(capsys, cli_settings, "judge", "evaluate", "--output", str(output))

    assert code == 1


def test_evaluate_targets_are_exclusive():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["judge", "evaluate", "--output", "a.txt", "--dataset", "ds-1"])
