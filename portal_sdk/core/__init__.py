"""Core session and dispatch runtime.

Pure Python on top of ``requests``; no Flask dependency. Import explicitly:
    from portal_sdk.core.config_store import ConfigStore
    from portal_sdk.core.tokens import TokenManager
    from portal_sdk.core.client import RequestDispatcher
"""
