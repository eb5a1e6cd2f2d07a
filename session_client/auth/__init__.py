"""
Authentication package for the Session Sync Client.

This package contains the credential stores shared by session handles,
secure session storage backed by the system keyring or an encrypted file,
and the auth flow used to obtain and clear tokens.
"""
