# -*- coding: utf-8 -*-
"""Offline producer: CSV tables -> merged aggregate -> shards + manifest.

Run with ``python -m nutrient_file.etl.cli`` or the ``cnf-etl`` script.
"""
