"""Allow ``python -m kodemachine``."""

from kodemachine.cli import main

raise SystemExit(main())
