"""
Integration modules for Paygate

Contains adapters for external payment providers:
- Card and wallet processors (Stripe, PayPal)
- Latin American gateways (PayU, Wompi, MercadoPago)
"""
