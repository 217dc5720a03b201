"""
IoT Machine Control System
Rule evaluation, machine state tracking and command dispatch over MQTT
"""

__version__ = "1.0.0"
