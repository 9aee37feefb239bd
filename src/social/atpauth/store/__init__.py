"""
Stores

- pending.py: Bounded, time-limited store of in-flight authorizations
- tokens.py: Session token stores keyed by DID (in-memory, Redis + Fernet)
"""
