"""Chat history storage and the Flowise completion client."""
