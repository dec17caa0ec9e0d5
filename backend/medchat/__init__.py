"""
MedChat - real-time clinical chat backend.
"""
