"""Session state, the agent loop and its collaborators.

Submodules are imported directly (``codeloop.session.loop``,
``codeloop.session.storage``, ...); the package itself stays import-light
so tools and plan code can depend on the session model without cycles.
"""
