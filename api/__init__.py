"""LABBUDDY API - HTTP and WebSocket surface."""
