"""
Submission validation for CodeDrop deployments

Validates a proposed file set before anything touches the filesystem:
- Target type allowed by settings, slug is filesystem-safe
- Relative, traversal-free paths outside reserved core directories
- Extension allow-list (text, code and asset types only)
- Per-file and total size limits
- PHP syntax (php -l when available, brace-balance heuristic otherwise)
- Dangerous PHP constructs (warnings only, never blocking)

Validation never fails fast: every file is checked and the complete
report is returned so the submitter can fix everything in one pass.

Usage:
    validator = DeploymentValidator()
    result = validator.validate(files, 'theme', 'storefront', settings)

    if not result.valid:
        print(validator.format_result(result))
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import logging
import os
import re
import shutil
import subprocess
import tempfile

from config.settings import DeploySettings
from .models import FileSpec

logger = logging.getLogger(__name__)

# Target slug: alphanumeric, hyphens, underscores (case-insensitive)
VALID_SLUG_PATTERN = re.compile(r'^[a-z0-9_-]+$', re.IGNORECASE)

# Drive-letter prefix, e.g. "C:" or "c:\"
DRIVE_LETTER_PATTERN = re.compile(r'^[a-zA-Z]:')


@dataclass
class ValidationIssue:
    """
    A single validation finding.

    Attributes:
        code: Machine-readable code (e.g. 'invalid_path')
        message: Human-readable description, prefixed with the file label
    """
    code: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {'code': self.code, 'message': self.message}


@dataclass
class ValidationResult:
    """Complete validation report. valid is True iff there are no errors."""
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def error_codes(self) -> List[str]:
        return [e.code for e in self.errors]

    def warning_codes(self) -> List[str]:
        return [w.code for w in self.warnings]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'valid': self.valid,
            'errors': [e.to_dict() for e in self.errors],
            'warnings': [w.to_dict() for w in self.warnings],
        }


def format_size(num_bytes: int) -> str:
    """Format a byte count for messages (e.g. 500 KB, 5 MB)"""
    if num_bytes < 1024:
        return f"{num_bytes} B"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f} KB"
    return f"{num_bytes / (1024 * 1024):.1f} MB"


class DeploymentValidator:
    """
    Structural and security gate over a proposed file set.

    Has no side effects beyond running the external PHP linter on a
    temporary copy of a script when the linter is installed.
    """

    # Extensions accepted for deployment (no executables, no archives)
    ALLOWED_EXTENSIONS = frozenset({
        'php', 'css', 'js', 'json', 'txt', 'md', 'html', 'twig',
        'svg', 'png', 'jpg', 'jpeg', 'gif',
        'woff', 'woff2', 'ttf', 'eot',
    })

    # Extensions whose content is executed server-side
    SCRIPT_EXTENSIONS = frozenset({'php'})

    # Core system directories that must never be written to
    RESERVED_PREFIXES = ('wp-admin', 'wp-includes', 'wp-content/uploads')

    # Dangerous constructs: pattern -> warning message
    DANGEROUS_PATTERNS = {
        r'eval\s*\(': 'eval() usage detected',
        r'shell_exec\s*\(': 'shell_exec() usage detected',
        r'\bexec\s*\(': 'exec() usage detected',
        r'system\s*\(': 'system() usage detected',
        r'passthru\s*\(': 'passthru() usage detected',
        r'proc_open\s*\(': 'proc_open() usage detected',
        r'popen\s*\(': 'popen() usage detected',
        r'base64_decode\s*\([^)]*\)\s*\)': 'base64_decode() used in nested call (possible execution)',
        r'preg_replace\s*\(\s*[\'"][^"\']*/e': 'preg_replace with /e modifier detected',
        r'(include|require)(_once)?\s*\(?\s*[\'"]https?://': 'Remote file include detected',
        r'file_get_contents\s*\(\s*[\'"]https?://': 'Remote file_get_contents detected',
        r'\$_(?:GET|POST|REQUEST|COOKIE|SERVER)\s*\[': 'Direct superglobal access (consider sanitization)',
    }

    def __init__(self, php_binary: Optional[str] = 'php', syntax_timeout: float = 10.0):
        """
        Args:
            php_binary: Name or path of the PHP CLI used for syntax checks.
                None disables the external check (heuristic only).
            syntax_timeout: Seconds before the external check is abandoned
        """
        self.php_binary = php_binary
        self.syntax_timeout = syntax_timeout
        self._compiled_patterns = [
            (re.compile(pattern, re.IGNORECASE), message)
            for pattern, message in self.DANGEROUS_PATTERNS.items()
        ]

    def validate(
        self,
        files: Sequence[FileSpec],
        target_type: str,
        target_slug: str,
        settings: DeploySettings,
    ) -> ValidationResult:
        """
        Run every check over a proposed deployment.

        Args:
            files: Proposed files in submission order
            target_type: 'theme', 'plugin' or 'mu-plugin'
            target_slug: Destination directory name
            settings: Limits and allowed target types

        Returns:
            ValidationResult with all errors and warnings found

        Examples:
            >>> result = validator.validate([], 'theme', 'storefront', DeploySettings())
            >>> result.error_codes()
            ['no_files']
        """
        result = ValidationResult()

        if target_type not in settings.allowed_targets:
            result.errors.append(ValidationIssue(
                'invalid_target_type',
                f'Target type "{target_type}" is not allowed.'
            ))

        if not target_slug or not VALID_SLUG_PATTERN.match(target_slug):
            result.errors.append(ValidationIssue(
                'invalid_target_slug',
                'Target slug must contain only alphanumeric characters, hyphens, and underscores.'
            ))

        if not files:
            result.errors.append(ValidationIssue('no_files', 'No files provided in the deployment.'))

        total_size = 0
        seen_paths = set()

        for index, file in enumerate(files):
            label = file.path or f"file[{index}]"
            try:
                size = file.size
            except UnicodeEncodeError:
                result.errors.append(ValidationIssue(
                    'invalid_file_encoding',
                    f"{label}: File content is not valid UTF-8 text."
                ))
                continue
            total_size += size

            path_error = self.check_path(file.path)
            if path_error:
                result.errors.append(ValidationIssue('invalid_path', f"{label}: {path_error}"))
                continue

            # Staging keys files by path; a second copy would overwrite the first
            normalized = file.path.replace('\\', '/').lower()
            if normalized in seen_paths:
                result.errors.append(ValidationIssue('invalid_path', f"{label}: Duplicate file path."))
                continue
            seen_paths.add(normalized)

            type_error = self.check_file_type(file.path)
            if type_error:
                result.errors.append(ValidationIssue('invalid_file_type', f"{label}: {type_error}"))
                continue

            if size > settings.max_file_size:
                result.errors.append(ValidationIssue(
                    'file_too_large',
                    f"{label}: File size ({format_size(size)}) exceeds the maximum "
                    f"allowed ({format_size(settings.max_file_size)})."
                ))

            if self._extension(file.path) in self.SCRIPT_EXTENSIONS:
                syntax_error = self.check_php_syntax(file.content)
                if syntax_error:
                    result.errors.append(ValidationIssue('php_syntax_error', f"{label}: {syntax_error}"))

                for warning in self.scan_dangerous_patterns(file.content):
                    result.warnings.append(ValidationIssue('dangerous_pattern', f"{label}: {warning}"))

        if total_size > settings.max_deployment_size:
            result.errors.append(ValidationIssue(
                'deployment_too_large',
                f"Total deployment size ({format_size(total_size)}) exceeds the maximum "
                f"allowed ({format_size(settings.max_deployment_size)})."
            ))

        if result.errors:
            logger.info(
                f"Validation rejected {target_type}/{target_slug}: "
                f"{', '.join(result.error_codes())}"
            )
        return result

    def check_path(self, path: str) -> Optional[str]:
        """
        Check a relative file path for safety.

        Returns:
            Error message, or None if the path is acceptable
        """
        if not path:
            return 'File path cannot be empty.'

        if '..' in path:
            return 'Path traversal (..) is not allowed.'

        if path.startswith('/') or path.startswith('\\') or DRIVE_LETTER_PATTERN.match(path):
            return 'Absolute paths are not allowed.'

        if '\0' in path:
            return 'Null bytes in paths are not allowed.'

        lowered = path.lower()
        for prefix in self.RESERVED_PREFIXES:
            if lowered.startswith(prefix):
                return f'Cannot deploy to core system directory: {prefix}'

        return None

    def _extension(self, path: str) -> str:
        basename = path.replace('\\', '/').rsplit('/', 1)[-1]
        if '.' not in basename:
            return ''
        return basename.rsplit('.', 1)[-1].lower()

    def check_file_type(self, path: str) -> Optional[str]:
        """
        Check a file extension against the allow-list.

        Returns:
            Error message, or None if the extension is allowed
        """
        extension = self._extension(path)
        if not extension:
            return 'File must have an extension.'
        if extension not in self.ALLOWED_EXTENSIONS:
            return f'File extension ".{extension}" is not allowed.'
        return None

    def check_php_syntax(self, content: str) -> Optional[str]:
        """
        Check PHP syntax.

        Uses `php -l` when the binary is on PATH, otherwise (or when the
        linter cannot be run) falls back to a brace-balance heuristic.

        Returns:
            Error message, or None if no problem was found
        """
        php_path = shutil.which(self.php_binary) if self.php_binary else None
        if php_path:
            lint_result = self._lint_with_php(php_path, content)
            if lint_result is not None:
                ok, message = lint_result
                return None if ok else f"PHP syntax error: {message}"

        open_braces = content.count('{')
        close_braces = content.count('}')
        if open_braces != close_braces:
            return f"Mismatched braces: {open_braces} opening, {close_braces} closing."
        return None

    def _lint_with_php(self, php_path: str, content: str) -> Optional[Tuple[bool, str]]:
        """
        Run `php -l` on a temporary copy of content.

        Returns:
            (ok, output) or None if the linter could not be run
        """
        fd, temp_path = tempfile.mkstemp(prefix='codedrop_syntax_', suffix='.php')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(content)
            completed = subprocess.run(
                [php_path, '-l', temp_path],
                capture_output=True,
                text=True,
                timeout=self.syntax_timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"PHP lint unavailable, using brace heuristic: {e}")
            return None
        finally:
            try:
                os.unlink(temp_path)
            except OSError:
                pass

        if completed.returncode == 0:
            return True, ''
        output = (completed.stdout + completed.stderr).strip().replace(temp_path, 'file')
        return False, output

    def scan_dangerous_patterns(self, content: str) -> List[str]:
        """Return one warning message per matching dangerous-construct pattern"""
        return [message for pattern, message in self._compiled_patterns if pattern.search(content)]

    def format_result(self, result: ValidationResult) -> str:
        """
        Format a validation report for human-readable display.

        Examples:
            >>> print(validator.format_result(result))
            ERRORS:
              - [invalid_path] ../x.php: Path traversal (..) is not allowed.
            WARNINGS:
              - [dangerous_pattern] inc/a.php: eval() usage detected
        """
        if not result.errors and not result.warnings:
            return "No validation issues found."

        output = []
        for heading, issues in (('ERRORS', result.errors), ('WARNINGS', result.warnings)):
            if issues:
                output.append(f"{heading}:")
                for issue in issues:
                    output.append(f"  - [{issue.code}] {issue.message}")
        return "\n".join(output)
