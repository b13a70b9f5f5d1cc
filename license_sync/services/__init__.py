"""Sync services"""
