# -*- coding: utf-8 -*-
"""Canadian Nutrient File: sharded dataset producer and local sync client."""

__version__ = "1.0.0"
