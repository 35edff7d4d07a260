"""Chat side of the relay: client contract, rendering and the Telegram bot."""
