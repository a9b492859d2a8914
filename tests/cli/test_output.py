"""Tests for rich rendering of apply reports."""

from converge.cli.output import render_report


class TestRenderReport:
    """Test the apply report."""

    def test_failed_actions_are_explained(self, orchestrator, provider, make_spec, capsys):
        """Test each failed action is printed with its cause."""
        provider.fail_on("create", "logs")
        report = orchestrator.apply([make_spec("bucket", "logs"), make_spec("bucket", "audit")])

        render_report(report)

        output = capsys.readouterr().out
        assert "Apply Failed" in output
        assert "Resource: bucket.logs" in output
        assert "Cause: injected create failure for logs" in output
        assert "Resource: bucket.audit" not in output

    def test_success_has_no_error_details(self, orchestrator, make_spec, capsys):
        """Test a clean apply prints only the summary."""
        report = orchestrator.apply([make_spec("bucket", "logs")])

        render_report(report)

        output = capsys.readouterr().out
        assert "Apply Complete" in output
        assert "Cause:" not in output
