"""
Distributed Job Coordination and Record-Claim Engine

Runs an externally-triggered batch job on exactly one replica of a horizontally
scaled service, with fenced leader election, skip-locked record claiming,
retry/circuit-breaking around downstream calls, stall detection and
crash reconciliation.
"""

__version__ = "1.0.0"
