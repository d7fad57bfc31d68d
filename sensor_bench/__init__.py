"""
Throughput benchmark harness for sensor clients.

The package floods a sensor's Unix socket with synthetic Suricata alerts,
stands in for the remote collector the sensor streams event batches to over
gRPC, and reports how many events per second made it through.

The command line entry point is :func:`sensor_bench.main.main`.
"""
