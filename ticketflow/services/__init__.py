"""Service modules - Business logic around the transition engine"""
