"""Service layer: Discogs access, sign-in, sync and the play ledger."""
