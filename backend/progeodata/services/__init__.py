"""Pipeline stages and the services that drive them."""
