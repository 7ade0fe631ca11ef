"""Tests for the bearer token issuing script."""

from scripts.issue_token import main
from tastegraph.config.settings import settings
from tastegraph.utils.local_tokens import decode_access_token


class TestIssueToken:
    def test_issues_a_verifiable_admin_token(self, monkeypatch, capsys):
        monkeypatch.setattr(settings, "ADMIN_EMAILS", ["admin@example.com"])

        token = main(["admin-1", "Admin@Example.com"])

        claims = decode_access_token(token)
        assert claims["sub"] == "admin-1"
        assert claims["email"] == "Admin@Example.com"
        output = capsys.readouterr().out
        assert "Admin: yes" in output
        assert output.strip().endswith(token)

    def test_flags_non_admin_email_and_custom_lifetime(self, monkeypatch, capsys):
        monkeypatch.setattr(settings, "ADMIN_EMAILS", ["admin@example.com"])

        token = main(["user-1", "user@example.com", "--expires-in", "60"])

        claims = decode_access_token(token)
        assert claims["exp"] - claims["iat"] == 60
        assert "not in ADMIN_EMAILS" in capsys.readouterr().out
