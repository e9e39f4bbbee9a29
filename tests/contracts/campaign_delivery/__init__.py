# Campaign Delivery Service Contracts

"""
Campaign Delivery Service Contract Module

This module contains:
- data_contract.py: request payload builders and test data factories
  over the service's own models
"""
