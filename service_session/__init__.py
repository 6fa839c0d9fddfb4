"""
Stateless session service package.
"""
