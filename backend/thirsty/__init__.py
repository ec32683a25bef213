"""Thirsty entitlement and subscription synchronization backend."""
