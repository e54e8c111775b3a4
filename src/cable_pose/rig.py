import numpy as np

# geometry of the eight cable rig, measured by hand
# distances are in millimeters
# the index of a row is the cable number, anchor i and attachment i are two ends of the same cable

# fixed cable exit points in the world frame. four low, four high.
anchors = np.array([
    [-828.274, -438.224,  440.767],
    [-828.274, 1374.676,  669.367],
    [ 860.051, 1374.676,  669.367],
    [ 860.051, -438.224,  440.767],
    [-828.274, -438.224, 1990.167],
    [-828.274, 1374.676, 2002.867],
    [ 860.051, 1374.676, 2002.867],
    [ 860.051, -438.224, 1990.167],
], dtype=float)

# cable attachment points in the reference frame of the platform
attachments = np.array([
    [ 141.471,   7.176,  30.883],
    [ 141.863,  47.235, 263.421],
    [-101.83,   21.458, 264.398],
    [-106.124, -13.145,  18.728],
    [ 144.041,  77.969,  41.493],
    [  76.834, 107.235, 258.215],
    [ -85.543,  85.865, 247.866],
    [-164.557,  47.587,  57.891],
], dtype=float)

# a set of lengths read off the rig, used as the default measurement
measured_cable_lengths = np.array([1086.46, 1149.21, 1251.04, 1182.61, 1332.51, 1464.13, 1534.88, 1384.17], dtype=float)

# x, y, z, roll, pitch, yaw
default_initial_guess = np.zeros(6, dtype=float)

# a pose roughly in the middle of the working volume, used by the demo
demo_pose = np.array([20.0, 450.0, 700.0, 0.05, -0.03, 0.1], dtype=float)
