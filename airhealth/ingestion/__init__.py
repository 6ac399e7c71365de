"""Provider client, payload mapping and scheduling."""
