"""Marquee IPTV catalog engine."""
