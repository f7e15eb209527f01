"""TEC Rural crop diagnosis bot for WhatsApp and Telegram."""
