"""eBay marketplace integration: credentials, token exchange, Trading and Browse calls."""
