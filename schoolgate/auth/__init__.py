"""Authentication: identities, tokens, login flows and the API gate."""
