"""
Shared components for the Session Sync Client.

This package contains the data models, collaborator interfaces, exception
hierarchy and logging configuration used by the client package.
"""
