"""auth/ -- Authentication and authorization core for hitime.

Bearer tokens (TokenCodec + KeyRing), the OAuth2 authorization-code flow
(AuthorizationCodeStore, TokenStore, ClientRegistry, OAuthFlowController),
the request gate (AuthGate) and the credential store (UserStore).

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or events/.
api/ imports from auth/, not the other way around.
"""
