"""Configuration helpers for the floor monitoring application."""

# This package collects runtime configuration assets that can be customised
# without touching the application logic.  Individual modules provide
# structured accessors for specific domains (the factory reference lists and
# the upstream REST endpoint map).
