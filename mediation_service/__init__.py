"""
Mediation Service - Dispute Mediation Workflow
==============================================

Backend for community dispute mediation:
1. Case filing and the case lifecycle state machine
2. Three-expert mediation panels
3. Settlement agreements signed by the parties
4. Per-user notifications and realtime case events
"""

__version__ = "1.0.0"
