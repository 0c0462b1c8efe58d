"""P2P.org Superform integration: fee terms and proxy address prediction."""
