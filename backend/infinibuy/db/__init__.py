"""
Database Package
Infinibuy Trading Core
"""
