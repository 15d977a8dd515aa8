# SPDX-License-Identifier: Apache-2.0
"""
Command-line front end.

Covers:
  • status / ask / optimize run against the mock provider and print results
  • estimate prints token and cost figures without touching any provider
  • usage errors exit 2, classified provider errors exit 1
"""

import json

import pytest

from relay_sdk.cli import EXIT_AI_ERROR, EXIT_OK, EXIT_USAGE, main


def test_status(capsys):
    assert main(["--mock", "status"]) == EXIT_OK
    status = json.loads(capsys.readouterr().out)
    assert status["default_provider"] == "mock"
    assert status["initialized"] is True


def test_ask(capsys):
    assert main(["--mock", "ask", "what is a token bucket?", "--max-tokens", "3"]) == EXIT_OK
    assert capsys.readouterr().out.strip() == "what is a"


def test_ask_stream(capsys):
    assert main(["--mock", "ask", "hello there", "--stream"]) == EXIT_OK
    assert capsys.readouterr().out.strip() == "hello there (mock) [mock-model]"


def test_ask_unknown_provider_exits_with_error(capsys):
    assert main(["--mock", "ask", "hi", "--provider", "nope"]) == EXIT_AI_ERROR
    assert capsys.readouterr().err.startswith("error: Provider nope not available")


def test_estimate(capsys):
    code = main(["estimate", "x" * 4_000, "--model", "gpt-4", "--output-tokens", "1000"])
    assert code == EXIT_OK
    report = json.loads(capsys.readouterr().out)
    assert report["input_tokens"] == 1_000
    assert report["estimated_cost_usd"] == pytest.approx(0.09)


def test_estimate_rejects_negative_output(capsys):
    assert main(["estimate", "hi", "--output-tokens", "-1"]) == EXIT_USAGE


@pytest.mark.parametrize(
    "argv",
    [[], ["bogus"], ["estimate", "x", "--model", "no-such-model"], ["optimize", "file.json"]],
)
def test_usage_errors(argv, capsys):
    assert main(argv) == EXIT_USAGE


def test_optimize(tmp_path, capsys):
    path = tmp_path / "conversation.json"
    path.write_text(
        json.dumps(
            [
                {"role": "system", "content": "s" * 200},
                {"role": "user", "content": "a" * 400},
                {"role": "assistant", "content": "b" * 400},
                {"role": "user", "content": "c" * 400},
            ]
        ),
        encoding="utf-8",
    )
    code = main(["--mock", "optimize", str(path), "--max-tokens", "200", "--strategy", "truncate"])
    assert code == EXIT_OK
    report = json.loads(capsys.readouterr().out)
    assert [m["content"][0] for m in report["messages"]] == ["s", "c"]
    assert report["tokens_used"] == 150
    assert report["summary"]["compression_ratio"] == 0.5


def test_optimize_unreadable_file(tmp_path, capsys):
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    assert main(["--mock", "optimize", str(bad), "--max-tokens", "10"]) == EXIT_USAGE
    assert main(["--mock", "optimize", str(tmp_path / "missing.json"), "--max-tokens", "10"]) == EXIT_USAGE
