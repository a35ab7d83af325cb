# ABOUTME: Allows running secretsync with `python -m secretsync`
# ABOUTME: Delegates to the CLI entry point

from secretsync.cli import main

raise SystemExit(main())
