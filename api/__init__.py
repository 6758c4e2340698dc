"""HTTP front for the matching engine"""
