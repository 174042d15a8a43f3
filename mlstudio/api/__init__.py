"""Studio HTTP API"""
