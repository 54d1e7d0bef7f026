"""ORM Models"""
