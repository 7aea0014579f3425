"""
ORB Miner - unattended mining for the ORB round game on Solana.

Funds an automation escrow, deploys into each round when the expected value
says it's worth it, claims and stakes rewards, and keeps an honest ledger
of what all that earned.
"""

__version__ = "0.1.0"
