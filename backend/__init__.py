"""Nat assistant backend: conversations, prompt composition and model fallback."""
