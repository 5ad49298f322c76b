"""Telegram Image Relay: Gemini image generation with delivery to a Telegram chat."""
