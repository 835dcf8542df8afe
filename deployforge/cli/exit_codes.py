"""Process exit codes shared by all commands."""

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ROLLED_BACK = 2
EXIT_UNHEALTHY = 3
