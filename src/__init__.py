"""Carbon credit trading source package.

This package contains the core ecosystem components:
- config: Configuration loading and management
- protocol: A2A message envelope, payloads and message bus
- credits: Telemetry, credit ledger and the credit-issuance engine
- agents: Sequestration, offset and trading agents plus the agent manager
"""

from __future__ import annotations

__all__: list[str] = []
