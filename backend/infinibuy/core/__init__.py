"""
Core Module
Infinibuy Trading Core

Configuration, logging, exceptions, caching and the event bus.
"""
