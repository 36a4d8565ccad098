"""HTTP API for the payment-code wallet."""
