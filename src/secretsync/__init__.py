# ABOUTME: secretsync package initialization
# ABOUTME: Exposes version information

"""
secretsync - make GitHub Actions secrets exist where builds need them.

An application repository's build asks for the secrets it needs. Any that
are missing are requested from a central authority repository, whose
workflow copies them across. The build waits until they appear.

Package layout:

secretsync/
├── __init__.py          <- Package entry point
├── cli.py               <- `secretsync` command (ensure, export, publish, serve)
├── config.py            <- Settings from environment variables
├── errors.py            <- Exception types
├── server.py            <- MCP server exposing check/ensure tools
├── session.py           <- Wires clients and sync components together
├── sync/
│   ├── authority.py     <- Authority secrets file
│   ├── dispatcher.py    <- Export triggers (repository_dispatch, in-process)
│   ├── models.py        <- Requests, outcomes, reports
│   ├── poller.py        <- Bounded wait for a secret to appear
│   ├── registry.py      <- Target repository secret stores
│   ├── requester.py     <- ensure_secrets entry point
│   └── worker.py        <- Authority-side export
└── utils/
    ├── client.py        <- GitHub REST client
    ├── logging.py       <- Structured logging and audit trail
    └── safety.py        <- Read-only mode, rate limits, owner allowlist
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
