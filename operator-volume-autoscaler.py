#!/usr/bin/env python3

"""Run the Volume Autoscaler Operator. See operator_volume_autoscaler/operator_volume_autoscaler.py."""

from operator_volume_autoscaler.operator_volume_autoscaler import main

if __name__ == "__main__":
    main()
