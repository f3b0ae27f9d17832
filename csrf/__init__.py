"""csrf/ -- Anti-CSRF token issuance and validation.

Modules, leaves first: generator -> store / sql_store -> transport ->
validator -> session -> middleware.

Layer rule: csrf/ imports only core/, stdlib, and third-party libraries.
It does NOT import from api/ or web/. api/ and web/ import from csrf/.
"""
