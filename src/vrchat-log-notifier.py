#!/usr/bin/env python3
"""Launcher for running the notifier straight from a source checkout.

Installed copies get the ``vrchat-log-notifier`` console script instead; both
end up in :func:`vrchat_log_notifier.app.run`, which takes the single instance
lock before anything else starts.
"""

from __future__ import annotations

from vrchat_log_notifier.app import run

if __name__ == "__main__":
    raise SystemExit(run())
