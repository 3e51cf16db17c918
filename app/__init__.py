"""
Omnichannel Sync - ERP and storefront customer/order cache
"""
__version__ = "1.0.0"
