from kubestrap.transport.ssh import NodeChannels, SSHTransport

__all__ = ["NodeChannels", "SSHTransport"]
