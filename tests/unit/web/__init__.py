"""Unit tests for Inspectra web route modules.

Each route module has a corresponding test file. Routes are exercised in
process through ``httpx.ASGITransport`` against an app built around the
test ``EngineContext``; the acting profile is injected by overriding the
``get_current_actor`` dependency.
"""
