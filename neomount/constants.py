"""Module defining various global constants."""

# neomount version
VERSION = "1.0.0"

# Object store protocol
# The major version must be identical on the client and the store.
#
# Note that changes like extra optional store calls can be implemented without having
# to change the protocol version.
PROTOCOL_VERSION = "1.0.0"

# Special exit code for when neomount itself fails.
NEOMOUNT_ERROR_CODE = 254

# Exit code of a migration run where at least one entry failed to transfer.
MIGRATION_FAILED_CODE = 1

# Name of the socket file that exposes the union view inside the merged path.
UNION_SOCKET_NAME = ".neomount.sock"

# Name of the lock file that serializes migration cycles across processes.
MIGRATION_LOCK_NAME = ".neomount-migrate.lock"

# Prefix of temporary files written by the local tier before being moved in place.
PARTIAL_PREFIX = ".neomount-partial-"
