"""
Models

- oauth.py: Pydantic shapes of discovery documents and OAuth responses
- session.py: Pending authorization and session records that own a DPoP key
"""
