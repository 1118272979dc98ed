# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
Runtime handles for streams and tables, subscriptions and per-record error routing.
"""
