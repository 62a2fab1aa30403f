"""Lead cleaning pipeline and WhatsApp consent responder."""
