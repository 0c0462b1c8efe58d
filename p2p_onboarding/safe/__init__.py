"""Safe multisig deployment, batching and transaction execution."""
