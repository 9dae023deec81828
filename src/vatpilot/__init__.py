"""VATpilot: Shopify order sync and EU IOSS return generation."""
