class Resources:
    """Centralised resource key definitions.

    ``use_*`` keys measure utilization, ``sat_*`` keys saturation. Keys are
    plain strings so reduced samples serialize without conversion.
    """

    USE_CPU = "use_cpu"
    SAT_CPU = "sat_cpu"
    USE_MEMORY = "use_memory"
    SAT_MEMORY = "sat_memory"
    USE_DISKS = "use_disks"
    USE_NETWORK = "use_network"

    # Display names and spike descriptions handed to the renderer.
    NAMES = {
        USE_CPU: ("CPU usage", "CPU spike"),
        SAT_CPU: ("Load", "Load spike"),
        USE_MEMORY: ("Memory usage", "Memory spike"),
        SAT_MEMORY: ("Swap out", "Swap"),
        USE_DISKS: ("Disk I/O", "Disk I/O spike"),
        USE_NETWORK: ("Network I/O", "Network I/O spike"),
    }

    @classmethod
    def all(cls) -> list[str]:
        """All resource keys in display order."""
        return [
            cls.USE_CPU,
            cls.SAT_CPU,
            cls.USE_MEMORY,
            cls.SAT_MEMORY,
            cls.USE_DISKS,
            cls.USE_NETWORK,
        ]

    @classmethod
    def unbounded(cls) -> list[str]:
        """Resources without a natural maximum, normalized by a dynamic ceiling."""
        return [cls.SAT_CPU, cls.USE_DISKS, cls.USE_NETWORK]

    @classmethod
    def event_description(cls, key: str) -> str:
        if key not in cls.NAMES:
            raise ValueError(f"Unknown resource: {key}")
        return cls.NAMES[key][1]
