"""auth/ -- Accounts backend for FlowForge.

Credential store, API Key Manager, Session/Token Service, Policy Gate and the
authentication strategies built on them.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
