"""
Blue/green rollouts with canary traffic shifting.

Contains the target registry, health prober, traffic shifter, the rollout
state machine driving them, and the append-only deployment ledger it records
every transition in.
"""
