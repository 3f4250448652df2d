from __future__ import annotations

import logging

from quiz_arena.application import create_app

logging.basicConfig(level=logging.INFO)

app = create_app()
