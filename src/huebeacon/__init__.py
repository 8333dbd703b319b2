"""huebeacon package"""
