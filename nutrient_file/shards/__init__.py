# -*- coding: utf-8 -*-
"""Runtime consumer: manifest check, sequential shard sync, local store reads."""
