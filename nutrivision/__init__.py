"""
Nutri-Vision Backend

Booking and communication service connecting patients with nutrition
professionals: accounts, appointment approval workflow, appointment-scoped
chat and WebRTC call signaling.
"""

__version__ = "0.1.0"
__author__ = "Nutri-Vision Team"
