"""
Application Layer

Ambient services for embedding the OAuth client in an application.

Key Components:
- config.py: Configuration management using Pydantic settings
- cli.py: Logging and Sentry setup, token store wiring, utility commands
- tasks.py: Background sweep of expired pending authorizations
"""
