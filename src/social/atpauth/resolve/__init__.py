"""
Identity Resolution

This package resolves AT Protocol identifiers (handles, DIDs) to the servers
that host and authorize the account.

Key Components:
- validation.py: Handle validation and did:web SSRF guards
- handle.py: Handle and DID document resolution
- discovery.py: The full discovery chain to the authorization server
- __main__.py: CLI interface for resolution

Resolution Types:
1. Handle Resolution
   - HTTP-based resolution via well-known endpoints (.well-known/atproto-did)
   - DNS-based resolution via TXT records (_atproto.{handle})

2. DID Resolution
   - did:plc method resolution via PLC directory
   - did:web method resolution via well-known endpoints

Malformed handles and did:web hosts that point at local or private addresses
are rejected before any request is made.
"""
