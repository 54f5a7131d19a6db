def mask_token(text: str, token: str) -> str:
    """Replace a session token in a log line with a short, non-reversible form."""
    if not token:
        return text
    masked = f"{token[:4]}****" if len(token) > 8 else "****"
    return text.replace(token, masked)
