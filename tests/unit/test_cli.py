# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Tests for the typer CLI."""

import pytest
from typer.testing import CliRunner

from switchboard import cli

runner = CliRunner()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Keep rich from wrapping table cells."""
    monkeypatch.setattr(cli.console, "width", 200)


class TestWorkflowsCommand:
    """Tests for the workflows command."""

    def test_lists_workflows(self):
        """Test every workflow name is printed."""
        result = runner.invoke(cli.app, ["workflows"])

        assert result.exit_code == 0
        for name in ("customer-support", "prompt-chain", "evaluator-optimizer"):
            assert name in result.output


class TestRunCommand:
    """Tests for the run command."""

    def test_unknown_workflow(self):
        """Test an unknown name exits with status 1."""
        result = runner.invoke(cli.app, ["run", "nope"])

        assert result.exit_code == 1
        assert "Unknown workflow: nope" in result.output

    def test_missing_input(self):
        """Test a missing required input exits with status 1."""
        result = runner.invoke(cli.app, ["run", "prompt-chain"])

        assert result.exit_code == 1
        assert "requires input(s): topic" in result.output

    def test_malformed_input(self):
        """Test inputs must be key=value."""
        result = runner.invoke(cli.app, ["run", "prompt-chain", "-i", "topic"])

        assert result.exit_code == 1
        assert "expected key=value" in result.output

    def test_runs_workflow(self, monkeypatch, scripted_model):
        """Test a workflow runs and each stage is printed."""
        model = scripted_model(["Cats are animals."])
        monkeypatch.setattr(cli, "create_chat_model", lambda settings: model)

        result = runner.invoke(cli.app, ["run", "prompt-chain", "-i", "topic=cats"])

        assert result.exit_code == 0, result.output
        assert "generate_joke" in result.output
        assert "Cats are animals." in result.output
        assert "Completed" in result.output

    def test_failed_run_exits_nonzero(self, monkeypatch, scripted_model):
        """Test a failed run exits with status 1."""
        model = scripted_model(["joke one", "this is not json"])
        monkeypatch.setattr(cli, "create_chat_model", lambda settings: model)

        result = runner.invoke(cli.app, ["run", "evaluator-optimizer", "-i", "topic=cats"])

        assert result.exit_code == 1
        assert "Failed" in result.output
