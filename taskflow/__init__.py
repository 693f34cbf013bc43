"""
TaskFlow reminder and live-notification backend package.
"""
