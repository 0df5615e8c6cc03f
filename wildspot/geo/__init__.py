"""Geospatial helpers"""
