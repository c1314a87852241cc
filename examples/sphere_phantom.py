import math
import numpy as np
import torch
import matplotlib.pyplot as plt
from fdkpipe import Geometry, Projection, ReconstructionConfig, reconstruct


SPHERES = [
    # center x, y, z [mm], radius [mm], density
    (0.0, 0.0, 0.0, 20.0, 1.0),
    (8.0, 0.0, 0.0, 5.0, 0.5),
    (-8.0, 4.0, 6.0, 4.0, -0.3),
    (0.0, -10.0, -8.0, 3.0, 0.8),
]


def sphere_projection(geometry, angle):
    """Exact line integrals through SPHERES for one source position."""
    h = (np.arange(geometry.det_cols) + 0.5) * geometry.det_pitch_u + geometry.h_min
    v = (np.arange(geometry.det_rows) + 0.5) * geometry.det_pitch_v + geometry.v_min
    hh, vv = np.meshgrid(h, v)

    c, s = math.cos(angle), math.sin(angle)
    source = np.array([-geometry.d_so * c, -geometry.d_so * s, 0.0])
    # Ray directions from the source to every detector pixel
    det_x = geometry.d_od * c - hh * s
    det_y = geometry.d_od * s + hh * c
    direction = np.stack([det_x - source[0], det_y - source[1], vv], axis=-1)
    direction /= np.linalg.norm(direction, axis=-1, keepdims=True)

    image = np.zeros(hh.shape)
    for cx, cy, cz, radius, density in SPHERES:
        to_center = np.array([cx, cy, cz]) - source
        along = direction @ to_center
        dist2 = np.dot(to_center, to_center) - along ** 2
        image += density * 2.0 * np.sqrt(np.clip(radius ** 2 - dist2, 0.0, None))
    return image.astype(np.float32)


def main():
    geometry = Geometry(
        det_cols=256, det_rows=256, det_pitch_u=0.4, det_pitch_v=0.4,
        d_so=300.0, d_od=200.0,
        vol_x=128, vol_y=128, vol_z=128,
        voxel_x=0.4, voxel_y=0.4, voxel_z=0.4,
    )
    num_views = 360
    angles = np.linspace(0, 2 * math.pi, num_views, endpoint=False)

    projections = []
    for i, angle in enumerate(angles):
        data = torch.from_numpy(sphere_projection(geometry, angle))
        projections.append(Projection(data, geometry.det_cols, geometry.det_rows, i, angle))
    sinogram_mid = projections[0].data.numpy().copy()

    config = ReconstructionConfig(geometry, angles)
    reconstruction = reconstruct(config, projections).numpy()

    mid_slice = geometry.vol_z // 2
    print("Reconstruction shape:", reconstruction.shape)
    print("Center value (expected 1.0):", reconstruction[mid_slice, 64, 64])
    print("Reco data range:", reconstruction.min(), reconstruction.max())

    plt.figure(figsize=(12, 4))
    plt.subplot(1, 3, 1)
    plt.imshow(sinogram_mid, cmap='gray')
    plt.title("Projection at 0 rad")
    plt.axis('off')
    plt.subplot(1, 3, 2)
    plt.imshow(reconstruction[mid_slice], cmap='gray')
    plt.title("Recon axial mid-slice")
    plt.axis('off')
    plt.subplot(1, 3, 3)
    plt.imshow(reconstruction[:, :, geometry.vol_x // 2], cmap='gray')
    plt.title("Recon sagittal mid-slice")
    plt.axis('off')
    plt.tight_layout()
    plt.show()


if __name__ == "__main__":
    main()
