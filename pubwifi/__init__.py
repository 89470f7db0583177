"""VPN session lifecycle backend for the public-WiFi protection app."""
