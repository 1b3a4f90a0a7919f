"""Centralized constants for pgconvert."""

# Process exit codes. Values match the historical shell tooling so existing
# cron and monitoring checks keep working.
EXIT_OK = 0
EXIT_INVALID_OPTION = 1
EXIT_MISSING_ARGUMENT = 2
EXIT_MISSING_DEPENDENCY = 3
EXIT_SOURCE = 4
EXIT_WORKSPACE = 5
EXIT_DESTINATION = 6
EXIT_IMPORT = 7
EXIT_EXPORT = 8
EXIT_PUBLISH = 9
EXIT_SANITIZATION = 10
EXIT_INTERRUPTED = 130

# Workspace
DEFAULT_WORKSPACE_PREFIX = "/tmp/.pgsql_convert_wspace_"  # noqa: S108 - private 0700 dir
DEFAULT_SANITISE_WORKSPACE_PREFIX = "/tmp/.pgsql_sanitise_wspace_"  # noqa: S108
WORKSPACE_TOKEN_BYTES = 16
WORKSPACE_MODE = 0o700
DUMP_FILE_MODE = 0o600
UNIT_DIR_MODE = 0o700
DATA_DIR_MODE = 0o700

# Export package layout
ROLES_FILENAME = "roles.sql"
SCHEMA_FILENAME = "schema.sql"
DATA_FILENAME = "data.sql"
ARCHIVE_SUFFIX = ".tar.gz"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"

# Databases never exported
RESERVED_UNITS = frozenset({"template0", "template1", "postgres"})
MAINTENANCE_DATABASE = "postgres"

# Compression
GZIP_COMPRESSION_LEVEL = 4

# Intermediary service defaults
DEFAULT_SERVICE_NAME = "postgresql"
DEFAULT_SERVICE_OWNER = "postgres"
DEFAULT_SERVICE_GROUP = "postgres"
DEFAULT_PGSQL_HOST = "localhost"
DEFAULT_PGSQL_PORT = 5432

# Credential hashing
PASSWORD_HASH_PREFIX = "md5"

# Line prefix stripped from every dump
SQL_COMMENT_PREFIX = b"--"
