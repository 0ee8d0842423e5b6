"""Direct-messaging core: conversations, messages and realtime fan-out."""
