"""Protocol clients, credentials and hub transports."""
