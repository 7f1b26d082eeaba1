"""Network tunnel exposure: ingress rules, config file and daemon control."""
