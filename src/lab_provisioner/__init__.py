"""Terraform-style provisioning for a Proxmox K3s fleet and its Linode edge."""

__version__ = "0.1.0"
