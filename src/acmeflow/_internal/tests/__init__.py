"""acmeflow tests"""
