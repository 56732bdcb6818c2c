"""Entry point for `python -m kubewatcher`.

Usage:
    python -m kubewatcher
    KUBEWATCHER_CONFIG=/etc/kubewatcher/config.yaml python -m kubewatcher
"""

from __future__ import annotations

import asyncio

from kubewatcher.app import main

asyncio.run(main())
