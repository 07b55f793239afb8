import numpy as np


class FrameBuilderConfig:
    # Fixed mounting correction applied after spherical conversion
    mount_yaw = 0.0  # [rad], rotation in the x-y plane
    mount_pitch = 0.0  # [rad], rotation in the x-z plane
    mount_roll = 0.0  # [rad], rotation in the y-z plane


class CaptureConfig:
    # Sensor model, selects the laser vertical angle table
    model = "VLP16"  # "VLP16" or "HDL32E"

    # Source selection: pcap_path wins when set, otherwise the live socket is used
    pcap_path = None  # recorded capture file
    address = "0.0.0.0"  # live sensor bind address
    port = 2368  # Velodyne data port

    # Decoding
    distance_scale = 0.2  # [scene units / raw tick], 2 mm ticks expressed in cm
    max_rotation_packets = 400  # emit a partial rotation after this many packets without a wrap

    # Buffering and pacing
    pull_timeout = 0.1  # [s], bounded wait of pull_next_batch()
    queue_size = 16  # completed rotations buffered before the oldest is dropped
    realtime_replay = True  # pace pcap replay by the recorded packet timestamps
    socket_timeout = 0.5  # [s], live socket receive timeout


class RadarConfig:
    # Ingestion server
    host = "0.0.0.0"
    port = 12345

    # Mount offset of the radar relative to the LIDAR origin
    mount_offset = (0.0, 0.0, 0.0)  # (up, right, back) [scene units], rig specific
    # (axis index, sign) in the LIDAR frame for each of up, right, back
    mount_axes = ((2, 1.0), (0, 1.0), (1, -1.0))

    # Valid detection envelope, relative to the radar origin
    range_min = 0.0  # [scene units]
    range_max = 1000.0  # [scene units]
    fov = np.deg2rad(60.0)  # [rad], full cone angle
    boresight = (0.0, 1.0, 0.0)  # LIDAR azimuth 0 direction


class FusionConfig:
    # Fixed wait per rendered frame, close to one sensor rotation
    frame_period = 0.043  # [s]

    # Cloud colors as RGB in [0, 255]
    lidar_color = (255, 255, 255)  # white
    radar_color = (227, 11, 92)  # raspberry
    gated_color = (0, 0, 255)  # blue

    window_name = "Velodyne"
