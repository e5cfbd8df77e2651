# pipeline/__init__.py
# Checkout-to-delivery pipeline: codec, normalizer, errors and agents
