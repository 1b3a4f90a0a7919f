"""Credential reset and rule-driven data transforms.

Role passwords are rewritten in the ``pg_dumpall -g --quote-all-identifiers``
output using PostgreSQL's MD5 scheme: ``"md5" + md5(password + role name)``.
Only ``ALTER ROLE "<name>" ... PASSWORD '...'`` lines are touched, each one
matched by its own role name.
"""

import hashlib
import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path

import structlog

from ..constants import PASSWORD_HASH_PREFIX
from .config_loader import ToolPaths
from .exceptions import CommandError, SanitizationError
from .service import IntermediaryService, ServiceStateError
from .subprocess_manager import SubprocessManager

logger = structlog.get_logger()

# ALTER ROLE "name" WITH ... PASSWORD '...'; with "" escaping inside the name
CREDENTIAL_LINE = re.compile(
    r"""^ALTER\ ROLE\ "(?P<name>(?:[^"]|"")+)"(?P<body>.*?)PASSWORD\ '(?P<password>[^']*)'""",
    re.VERBOSE,
)
VALID_UNTIL = re.compile(r"VALID UNTIL '[^']*'")
# SQL string literals and quoted identifiers, with doubled-quote escapes
QUOTED_SQL = re.compile(r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\"")


def hash_password(secret: str, principal: str) -> str:
    """PostgreSQL MD5 password hash for ``principal``."""
    digest = hashlib.md5((secret + principal).encode("utf-8"), usedforsecurity=False)
    return f"{PASSWORD_HASH_PREFIX}{digest.hexdigest()}"


def _principal(match: re.Match[str]) -> str:
    return match.group("name").replace('""', '"')


def find_principals(lines: list[str]) -> list[str]:
    """Role names with a password assignment, in file order, deduplicated."""
    seen: dict[str, None] = {}
    for line in lines:
        match = CREDENTIAL_LINE.match(line)
        if match:
            seen.setdefault(_principal(match), None)
    return list(seen)


@dataclass(frozen=True)
class SanitizationRule:
    """A single ``unit:statement;`` line from a rule file."""

    unit: str
    statement: str
    line_number: int


def parse_rules(text: str, known_units: set[str] | None = None) -> list[SanitizationRule]:
    """Parse a rule file, rejecting anything malformed.

    Blank lines are skipped. Every other line must be
    ``unit_name:single_sql_statement;`` naming a known unit.

    Raises:
        SanitizationError: First malformed line, with its line number
    """
    rules = []
    for number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue
        unit, separator, statement = line.partition(":")
        unit = unit.strip()
        statement = statement.strip()
        if not separator:
            raise SanitizationError(f"Rule line {number}: missing ':' separator")
        if not unit:
            raise SanitizationError(f"Rule line {number}: missing database name")
        if not statement or statement == ";":
            raise SanitizationError(f"Rule line {number}: missing SQL statement")
        if not statement.endswith(";"):
            raise SanitizationError(f"Rule line {number}: statement must end with ';'")
        if ";" in QUOTED_SQL.sub("", statement[:-1]):
            raise SanitizationError(f"Rule line {number}: only one SQL statement is allowed")
        if known_units is not None and unit not in known_units:
            raise SanitizationError(f"Rule line {number}: unknown database '{unit}'")
        rules.append(SanitizationRule(unit=unit, statement=statement, line_number=number))
    return rules


class SanitizationEngine:
    """Optional credential reset and data transforms applied before packaging."""

    def __init__(
        self,
        tools: ToolPaths | None = None,
        runner: SubprocessManager | None = None,
        command_timeout: float = 120,
    ):
        self.tools = tools or ToolPaths()
        self.runner = runner or SubprocessManager()
        self.command_timeout = command_timeout
        self.logger = logger.bind(component="sanitization")

    def reset_credentials(self, roles_path: Path, secret: str, clear_expiry: bool = False) -> list[str]:
        """Rewrite every role password in ``roles_path`` for ``secret``.

        Returns:
            The principals whose lines were rewritten

        Raises:
            SanitizationError: File unreadable, empty secret, or no principals
        """
        if not secret:
            raise SanitizationError("New password must not be empty")
        try:
            content = roles_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise SanitizationError(f"Could not read role file '{roles_path}': {e}") from e

        lines = content.splitlines(keepends=True)
        principals = find_principals(lines)
        if not principals:
            raise SanitizationError(f"No role users found in '{roles_path}'")

        hashes = {name: hash_password(secret, name) for name in principals}
        rewritten = []
        for line in lines:
            match = CREDENTIAL_LINE.match(line)
            if match:
                new_hash = hashes[_principal(match)]
                line = (
                    line[: match.start("password")] + new_hash + line[match.end("password") :]
                )
                if clear_expiry:
                    line = VALID_UNTIL.sub("VALID UNTIL 'infinity'", line)
            rewritten.append(line)

        self._replace_file(roles_path, "".join(rewritten))
        for name in principals:
            self.logger.info("Reset role password", role=name)
        return principals

    def load_rules(self, rules_file: Path, known_units: list[str]) -> list[SanitizationRule]:
        """Read and validate a rule file against the exported databases."""
        try:
            text = rules_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise SanitizationError(f"Could not read rule file '{rules_file}': {e}") from e
        rules = parse_rules(text, set(known_units))
        self.logger.info("Loaded data transform rules", path=str(rules_file), count=len(rules))
        return rules

    async def apply_data_rules(
        self, rules: list[SanitizationRule], service: IntermediaryService
    ) -> None:
        """Run each rule once against its database on the live service."""
        try:
            service.require_started()
        except ServiceStateError as e:
            raise SanitizationError(str(e)) from e

        for rule in rules:
            self.logger.info("Applying data transform", database=rule.unit, line=rule.line_number)
            try:
                await self.runner.run_command(
                    [
                        self.tools.psql,
                        *service.connection_args,
                        "-d",
                        rule.unit,
                        "-q",
                        "-X",
                        "-v",
                        "ON_ERROR_STOP=1",
                        "-c",
                        rule.statement,
                    ],
                    timeout=self.command_timeout,
                )
            except CommandError as e:
                raise SanitizationError(
                    f"Rule line {rule.line_number} failed on '{rule.unit}': {e}"
                ) from e

    def _replace_file(self, path: Path, content: str) -> None:
        """Write ``content`` next to ``path`` and rename it into place."""
        try:
            mode = path.stat().st_mode & 0o7777
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        except OSError as e:
            raise SanitizationError(f"Could not rewrite '{path}': {e}") from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
                handle.write(content)
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise SanitizationError(f"Could not rewrite '{path}': {e}") from e
