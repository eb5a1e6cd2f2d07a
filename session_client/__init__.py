"""
Session Sync Client.

Session handles over a shared credential store, with background revalidation
of the session and asynchronous login, logout and error notifications.
"""
