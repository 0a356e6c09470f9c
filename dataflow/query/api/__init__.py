"""Query API service"""
