"""Allow ``python -m epub_binder``."""

from .cli import main

raise SystemExit(main())
