"""Allow ``python -m imagepuppet``."""

from imagepuppet import cli

raise SystemExit(cli.main())
