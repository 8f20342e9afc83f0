"""
Application services: domain services, payments, activity log, peripherals.
"""
