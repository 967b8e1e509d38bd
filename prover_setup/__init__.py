"""
Succinct Prover Setup
=====================

Bootstraps a Linux GPU host into a running Succinct prover node.

What it does:
  1. Make sure it can act as root (directly or through sudo)
  2. Probe the host: NVIDIA driver version, Docker, NVIDIA Container Toolkit
  3. Install whatever is missing, skipping everything already in place
  4. After a fresh driver install, reboot; run the tool again afterwards
  5. Ask for the prover address and private key, validate both
  6. Launch the prover container with GPU access

Requirements:
  pip install requests psutil nvidia-ml-py

Usage:
  sudo succinct-prover-setup
  sudo python -m prover_setup
"""

__version__ = "2.0.0"
