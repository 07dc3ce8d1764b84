"""Best-effort push of committed events to live observer connections."""
