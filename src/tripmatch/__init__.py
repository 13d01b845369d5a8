"""
tripmatch: Privacy-preserving travel companion matching.

Uses a two-stage funnel approach:
1. Coarse Stage: public pre-filter on destination cell + date overlap
2. Fine Stage: MPC scoring of encrypted routes, dates and interests

Nobody sees another traveller's raw itinerary.
Trip detail is only revealed after BOTH parties accept the match.
"""

__version__ = "0.1.0"
